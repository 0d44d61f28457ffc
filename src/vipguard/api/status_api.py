"""
Status API for a vipguard node

Read-only view of the election state plus a manual priority override.
The app is created per node and served by the node's own event loop.
"""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from vipguard.api.state_file import render_state


class HealthInfo(BaseModel):
    ok: bool
    detail: str
    timestamp: float


class PeerInfo(BaseModel):
    peer_id: str
    configured: bool
    priority: Optional[int] = None
    state: Optional[str] = None
    sequence: int
    alive: bool
    seconds_since_seen: Optional[float] = None


class StatusResponse(BaseModel):
    """Response model for node status"""
    node_id: str = Field(..., description="This node's id")
    state: str = Field(..., description="INIT, BACKUP, MASTER or FAULT")
    effective_priority: int
    last_transition_time: Optional[float] = Field(None, description="Unix timestamp of the last transition")
    base_priority: int
    adjustments: Dict[str, int] = {}
    master_id: Optional[str] = None
    floating_address: str
    health: HealthInfo
    alarm: Optional[Dict[str, Any]] = None
    peers: List[PeerInfo] = []

    model_config = {
        "json_schema_extra": {
            "example": {
                "node_id": "lb1",
                "state": "MASTER",
                "effective_priority": 101,
                "last_transition_time": 1696176000.123,
                "base_priority": 101,
                "adjustments": {},
                "master_id": "lb1",
                "floating_address": "203.0.113.10",
                "health": {"ok": True, "detail": "exit=0", "timestamp": 1696176001.0},
                "alarm": None,
                "peers": [],
            }
        }
    }


class OverrideRequest(BaseModel):
    """Forced priority adjustment; negative values demote."""
    delta: int = Field(..., ge=-255, le=255, description="Priority adjustment")


def create_status_app(node) -> FastAPI:
    """Build the FastAPI app bound to one running node."""
    app = FastAPI(
        title="vipguard status",
        description="Election state of a vipguard node",
        version="1.0.0",
    )

    @app.get("/", tags=["General"])
    async def root():
        return {"service": "vipguard", "node_id": node.node_id, "docs": "/docs"}

    @app.get("/status", response_model=StatusResponse, tags=["Status"])
    async def status():
        """Current state, effective priority and last transition time."""
        return node.snapshot()

    @app.get("/state", response_class=PlainTextResponse, tags=["Status"])
    async def state_text():
        """Same content as the state file."""
        return render_state(node.snapshot())

    @app.get("/peers", response_model=List[PeerInfo], tags=["Status"])
    async def peers():
        return node.snapshot()["peers"]

    @app.get("/events", tags=["Status"])
    async def events(limit: int = Query(default=50, ge=1, le=100)):
        """Most recent transition and health events, oldest first."""
        return list(node.events.recent)[-limit:]

    @app.get("/healthz", tags=["Health"])
    async def healthz():
        """Liveness of the process; 503 when the node is in FAULT."""
        snap = node.snapshot()
        if snap["state"] == "FAULT":
            raise HTTPException(status_code=503, detail="node in FAULT state")
        return {"status": "ok", "state": snap["state"]}

    @app.put("/override", tags=["Control"])
    async def put_override(request: OverrideRequest):
        node.set_override(request.delta)
        return {"accepted": True, "delta": request.delta}

    @app.delete("/override", tags=["Control"])
    async def delete_override():
        node.clear_override()
        return {"accepted": True, "delta": None}

    return app
