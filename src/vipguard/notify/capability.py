"""External address reassignment capability.

The coordinator only needs two idempotent calls:

    associate(node_id, address)   -> point the floating address at node_id
    disassociate(address)         -> detach the floating address

Any object with these two coroutines works (see AddressCapability).
CommandAddressCapability shells out to an operator-provided command, which is
how cloud CLIs (aws ec2 associate-address, hcloud floating-ip assign, ...)
get plugged in. DryRunAddressCapability only tracks ownership in memory.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from typing import Dict, List, Optional, Protocol, Tuple

import structlog

from vipguard.utils.errors import ExternalCapabilityError

logger = structlog.get_logger(__name__)


class AddressCapability(Protocol):
    async def associate(self, node_id: str, address: str) -> None: ...

    async def disassociate(self, address: str) -> None: ...


class CommandAddressCapability:
    """Runs templated shell commands; {node_id} and {address} are substituted.

    A non-zero exit status or a timeout raises ExternalCapabilityError. The
    commands themselves must be idempotent.
    """

    def __init__(
        self,
        associate_command: str,
        disassociate_command: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.associate_command = associate_command
        self.disassociate_command = disassociate_command
        self.timeout = timeout

    async def _run(self, op: str, template: str, address: str, node_id: str = "") -> None:
        command = template.format(node_id=node_id, address=address)
        env = dict(os.environ, VIPGUARD_NODE_ID=node_id, VIPGUARD_ADDRESS=address)
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                env=env,
            )
        except OSError as e:
            raise ExternalCapabilityError(op, address, f"{op} could not start: {e}") from e
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            raise ExternalCapabilityError(op, address, f"{op} timed out after {self.timeout}s") from None
        if proc.returncode != 0:
            output = out.decode("utf-8", errors="replace").strip()[-300:]
            raise ExternalCapabilityError(op, address, f"{op} exited {proc.returncode}: {output}")
        logger.info("capability_command_ok", op=op, address=address, node=node_id or None)

    async def associate(self, node_id: str, address: str) -> None:
        await self._run("associate", self.associate_command, address, node_id)

    async def disassociate(self, address: str) -> None:
        if not self.disassociate_command:
            return
        await self._run("disassociate", self.disassociate_command, address)


class DryRunAddressCapability:
    """In-memory owner table; records every call.

    Used when no associate command is configured, and by tests as the fake
    external capability.
    """

    def __init__(self) -> None:
        self.owners: Dict[str, str] = {}
        self.calls: List[Tuple[str, ...]] = []

    async def associate(self, node_id: str, address: str) -> None:
        self.calls.append(("associate", node_id, address))
        if self.owners.get(address) == node_id:
            return
        logger.info("dry_run_associate", node=node_id, address=address, previous=self.owners.get(address))
        self.owners[address] = node_id

    async def disassociate(self, address: str) -> None:
        self.calls.append(("disassociate", address))
        if self.owners.pop(address, None) is not None:
            logger.info("dry_run_disassociate", address=address)

    def count(self, op: str, *args: str) -> int:
        return sum(1 for c in self.calls if c[0] == op and c[1:1 + len(args)] == args)
