"""
Signaling message schema shared by in-process channels and the WebSocket relay.

    {"type": "offer",         "from": "broadcaster", "sdp": "...", "sdp_type": "offer"}
    {"type": "answer",        "from": "viewer",      "sdp": "...", "sdp_type": "answer"}
    {"type": "ice-candidate", "from": "...",         "candidate": {"candidate": "...", "sdpMid": "0", "sdpMLineIndex": 0}}
    {"type": "join" | "leave", "from": "viewer"}

Every message also carries `id`, `timestamp` (epoch ms), `sender` and an
optional `target` participant id.
"""
import random
import time
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

SignalType = Literal["offer", "answer", "ice-candidate", "join", "leave"]
SignalRole = Literal["broadcaster", "viewer"]


class IceCandidatePayload(BaseModel):
    candidate: str
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None


class SignalMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: SignalType
    from_: SignalRole = Field(alias="from")
    sender: str
    target: Optional[str] = None
    id: Optional[str] = None
    timestamp: Optional[int] = None

    sdp: Optional[str] = None
    sdp_type: Optional[str] = None
    candidate: Optional[IceCandidatePayload] = None

    def stamped(self) -> "SignalMessage":
        """Return a copy with id and timestamp filled in when missing."""
        now_ms = int(time.time() * 1000)
        updates = {}
        if not self.id:
            updates["id"] = f"{self.type}-{now_ms}-{random.random()}"
        if self.timestamp is None:
            updates["timestamp"] = now_ms
        return self.model_copy(update=updates) if updates else self

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)
