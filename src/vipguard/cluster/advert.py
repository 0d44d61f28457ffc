"""Advertisement wire format.

One UTF-8 JSON object per datagram:

    {"type": "advert", "sender_id": "lb1", "state": "MASTER",
     "priority": 101, "sequence": 1718000000123, "auth_tag": "<hex>"}

`auth_tag` is HMAC-SHA256 over the canonical JSON (sorted keys, no spaces) of
every other field, keyed with the cluster's shared secret.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, replace
from typing import Any, Dict

from vipguard.utils.errors import AuthenticationError

MESSAGE_TYPE = "advert"
CLAIMABLE_STATES = ("MASTER", "BACKUP")
MAX_DATAGRAM = 1024


@dataclass(frozen=True)
class Advertisement:
    sender_id: str
    state: str
    priority: int
    sequence: int
    auth_tag: str = ""

    def fields(self) -> Dict[str, Any]:
        return {
            "type": MESSAGE_TYPE,
            "sender_id": self.sender_id,
            "state": self.state,
            "priority": self.priority,
            "sequence": self.sequence,
        }


def _canonical(fields: Dict[str, Any]) -> bytes:
    return json.dumps(fields, sort_keys=True, separators=(",", ":")).encode("utf-8")


class AdvertCodec:
    """Encodes and authenticates advertisements with a shared secret."""

    def __init__(self, secret: str | bytes):
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        if not secret:
            raise ValueError("shared secret must not be empty")
        self._key = secret

    def sign(self, advert: Advertisement) -> Advertisement:
        tag = hmac.new(self._key, _canonical(advert.fields()), hashlib.sha256).hexdigest()
        return replace(advert, auth_tag=tag)

    def encode(self, advert: Advertisement) -> bytes:
        signed = self.sign(advert)
        body = dict(signed.fields())
        body["auth_tag"] = signed.auth_tag
        return _canonical(body)

    def decode(self, data: bytes) -> Advertisement:
        """Parse and verify a datagram; raises AuthenticationError."""
        if len(data) > MAX_DATAGRAM:
            raise AuthenticationError("oversized datagram")
        try:
            obj = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise AuthenticationError("malformed payload") from None
        if not isinstance(obj, dict) or obj.get("type") != MESSAGE_TYPE:
            raise AuthenticationError("not an advertisement")

        sender = obj.get("sender_id")
        sender = sender if isinstance(sender, str) else None
        tag = obj.get("auth_tag")
        state = obj.get("state")
        priority = obj.get("priority")
        sequence = obj.get("sequence")
        if (
            sender is None
            or not isinstance(tag, str)
            or state not in CLAIMABLE_STATES
            # bool is an int subclass; reject it explicitly
            or not isinstance(priority, int) or isinstance(priority, bool)
            or not isinstance(sequence, int) or isinstance(sequence, bool)
        ):
            raise AuthenticationError("missing or invalid fields", sender_id=sender)

        advert = Advertisement(sender_id=sender, state=state, priority=priority, sequence=sequence)
        expected = self.sign(advert).auth_tag
        if not hmac.compare_digest(expected, tag):
            raise AuthenticationError("invalid authentication tag", sender_id=sender)
        return replace(advert, auth_tag=tag)
