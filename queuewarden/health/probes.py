# queuewarden/health/probes.py
"""
QueueWarden Health & Probes

Provides:
 - /health/live     -> liveness: healthy whenever the process can answer
 - /health/ready    -> readiness: healthy when the broker is connected, otherwise
                       degraded (still 200, so the platform does not kill a pod that
                       will reconnect on its own)
 - /health/startup  -> startup: 503 until MonitoringWorker initialization completed
 - /health          -> overall: 503 if the broker is down or queues cannot be listed

The worker is read from `app.state.worker`, set by the application lifespan.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from queuewarden.errors import BrokerError
from queuewarden.utils.logger import get_logger, StructuredLoggerAdapter
from queuewarden.utils.time_utils import iso_now

LOG = get_logger("queuewarden.health")
LAD = StructuredLoggerAdapter(LOG, {"component": "health"})

router = APIRouter(prefix="/health", tags=["health"])


# -----------------------------
# Pydantic response models
# -----------------------------
class ProbeResult(BaseModel):
    status: str = Field(..., description="healthy | degraded | unhealthy")
    description: str
    ts: str = Field(default_factory=iso_now)
    queues: Optional[int] = None


def _respond(result: ProbeResult, http_status: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=http_status, content=result.model_dump(exclude_none=True))


def get_worker(request: Request):
    worker = getattr(request.app.state, "worker", None)
    if worker is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="worker not started")
    return worker


# -----------------------------
# Endpoints
# -----------------------------
@router.get("/live", summary="Liveness probe")
async def liveness():
    return _respond(ProbeResult(status="healthy", description="Application is running"))


@router.get("/ready", summary="Readiness probe (broker connectivity)")
async def readiness(worker=Depends(get_worker)):
    if worker.broker.is_connected:
        return _respond(ProbeResult(status="healthy", description="Broker connection is active"))
    return _respond(ProbeResult(status="degraded", description="Broker connection is not available, service will retry"))


@router.get("/startup", summary="Startup probe (initialization complete)")
async def startup(worker=Depends(get_worker)):
    if worker.is_initialization_complete:
        return _respond(ProbeResult(status="healthy", description="Service initialization completed"))
    return _respond(ProbeResult(status="unhealthy", description="Service is still initializing"),
                    status.HTTP_503_SERVICE_UNAVAILABLE)


@router.get("", summary="Overall service health")
async def overall(worker=Depends(get_worker)):
    if not worker.broker.is_connected:
        return _respond(ProbeResult(status="unhealthy", description="Cannot connect to broker"),
                        status.HTTP_503_SERVICE_UNAVAILABLE)
    try:
        queues = await worker.broker.list_queues()
    except BrokerError as e:
        LAD.warning("Health check failed to list queues: %s", e)
        return _respond(ProbeResult(status="unhealthy", description=f"Health check failed: {e}"),
                        status.HTTP_503_SERVICE_UNAVAILABLE)
    return _respond(ProbeResult(status="healthy",
                                description=f"QueueWarden operational, monitoring {len(queues)} queues",
                                queues=len(queues)))


__all__ = ["router", "ProbeResult", "get_worker"]
