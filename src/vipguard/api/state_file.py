"""Plain-text state export for scripts and monitoring agents.

One KEY=VALUE pair per line, e.g.

    STATE=MASTER
    NODE_ID=lb1
    PRIORITY=101

The file is replaced atomically (write to a temp file, then rename) so a
reader never sees a partial update.
"""

from __future__ import annotations

import os
import tempfile
from typing import Dict, Optional


def render_state(snapshot: dict) -> str:
    health = snapshot.get("health") or {}
    alarm = snapshot.get("alarm")
    lines = {
        "STATE": snapshot["state"],
        "NODE_ID": snapshot["node_id"],
        "PRIORITY": snapshot["effective_priority"],
        "BASE_PRIORITY": snapshot.get("base_priority", ""),
        "MASTER_ID": snapshot.get("master_id") or "",
        "FLOATING_ADDRESS": snapshot.get("floating_address", ""),
        "HEALTHY": "1" if health.get("ok", True) else "0",
        "LAST_TRANSITION": (
            f"{snapshot['last_transition_time']:.3f}" if snapshot.get("last_transition_time") else ""
        ),
        "ALARM": alarm["op"] if alarm else "",
    }
    return "".join(f"{k}={v}\n" for k, v in lines.items())


def write_state_file(path: str, snapshot: dict) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".vipguard-state-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(render_state(snapshot))
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def read_state_file(path: str) -> Dict[str, str]:
    """Parse a state file; raises OSError if it cannot be read."""
    values: Dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            values[key.strip()] = value.strip()
    return values


def read_state(path: str) -> Optional[str]:
    """Just the STATE value, or None if missing."""
    return read_state_file(path).get("STATE")
