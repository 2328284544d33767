# FastAPI status bridge for run mode
# File: flightctl/api_server.py

"""
Read-only HTTP/WebSocket view of a run's shared state. Started in-process
by run mode when an API port is configured:

    flightctl run -v udp://:14540 -p plans/plan_0.plan --api-port 8000
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from flightctl import __version__
from flightctl.state import SharedRunState

logger = logging.getLogger(__name__)

WS_PUSH_INTERVAL_SECONDS = 1.0

# ============================================================================
# RESPONSE MODELS
# ============================================================================

class LocationModel(BaseModel):
    lat: float
    lon: float
    alt: float = 0.0


class WorkerModel(BaseModel):
    id: int
    endpoint: str
    plan_path: str
    status: str
    progress: float
    location: Optional[LocationModel] = None


class LogEntryModel(BaseModel):
    worker_id: int
    message: str


def _worker_model(snapshot, worker_id: int) -> WorkerModel:
    worker = snapshot.workers[worker_id]
    position = snapshot.positions[worker_id]
    return WorkerModel(
        id=worker.id,
        endpoint=worker.endpoint,
        plan_path=worker.plan_path,
        status=snapshot.statuses[worker_id].value,
        progress=snapshot.progress[worker_id],
        location=LocationModel(lat=position[0], lon=position[1], alt=position[2]) if position else None,
    )

# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(state: SharedRunState) -> FastAPI:
    """Build the status API over one run's shared state"""
    app = FastAPI(
        title="flightctl Run Status API",
        description="Live progress and logs of a multi-vehicle run",
        version=__version__
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def run_state() -> dict:
        snapshot = state.snapshot()
        return {
            "finished": snapshot.finished,
            "workers": [_worker_model(snapshot, i).model_dump() for i in range(len(snapshot.workers))],
            "logs": [{"worker_id": w, "message": m} for w, m in snapshot.logs],
        }

    @app.get("/")
    async def root():
        """API root endpoint"""
        return {
            "name": "flightctl Run Status API",
            "version": __version__,
            "workers": len(state),
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "finished": state.snapshot().finished,
            "timestamp": datetime.now().isoformat()
        }

    @app.get("/api/run/state")
    async def get_run_state():
        return run_state()

    @app.get("/api/run/workers/{worker_id}", response_model=WorkerModel)
    async def get_worker(worker_id: int):
        snapshot = state.snapshot()
        if not 0 <= worker_id < len(snapshot.workers):
            raise HTTPException(status_code=404, detail="Worker not found")
        return _worker_model(snapshot, worker_id)

    @app.get("/api/run/logs", response_model=List[LogEntryModel])
    async def get_logs(limit: int = Query(50, ge=1)):
        """Most recent log entries, oldest first"""
        logs = state.snapshot().logs[-limit:]
        return [LogEntryModel(worker_id=w, message=m) for w, m in logs]

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """WebSocket pushing the run state once per second"""
        await websocket.accept()
        try:
            while True:
                update = {
                    "type": "run_update",
                    "timestamp": datetime.now().isoformat(),
                    **run_state(),
                }
                await websocket.send_json(update)
                # client messages are ignored; receiving is how a disconnect surfaces
                try:
                    await asyncio.wait_for(websocket.receive_text(), timeout=WS_PUSH_INTERVAL_SECONDS)
                except asyncio.TimeoutError:
                    pass
        except WebSocketDisconnect:
            logger.debug("Status websocket client disconnected")

    return app
