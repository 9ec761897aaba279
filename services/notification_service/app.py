"""Notification Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from storefront.config import Settings
from storefront.job_queue import QueueUnavailable

from .otp import OtpJobRequest, OtpPayload
from .runtime import NotificationRuntime

# Settings
settings = Settings(service_name="notification-service", service_port=8005)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class OtpJobAccepted(BaseModel):
    job_id: str
    kind: str
    status: str = "waiting"


class OtpJobStatus(BaseModel):
    job_id: str
    kind: str
    status: str
    progress: int
    attempts_made: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


def get_runtime(request: Request) -> NotificationRuntime:
    return request.app.state.runtime


def create_app(runtime: Optional[NotificationRuntime] = None) -> FastAPI:
    """Build the application; tests pass a runtime wired to in-memory collaborators."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the application."""
        logger.info("Starting Notification Service...")
        app.state.runtime = runtime or NotificationRuntime(settings)
        await app.state.runtime.start()
        logger.info("Notification Service started successfully")

        yield

        logger.info("Shutting down Notification Service...")
        await app.state.runtime.stop()

    app = FastAPI(title="Notification Service", lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    @app.exception_handler(QueueUnavailable)
    async def queue_unavailable(request: Request, exc: QueueUnavailable):
        logger.error(f"Rejecting OTP job, queue unavailable: {str(exc)}")
        return JSONResponse(status_code=503, content={"detail": "OTP queue unavailable, try again later"})

    app.include_router(build_router())
    return app


def build_router() -> APIRouter:
    router = APIRouter()

    @router.get("/health")
    async def health_check(runtime: NotificationRuntime = Depends(get_runtime)):
        """Health check endpoint."""
        database_ok = await runtime.database.ping()
        return {
            "status": "healthy" if database_ok else "degraded",
            "service": "notification-service",
        }

    @router.post("/otp/jobs", response_model=OtpJobAccepted, status_code=202)
    async def submit_otp_job(request: OtpJobRequest, runtime: NotificationRuntime = Depends(get_runtime)):
        """Queue an OTP email."""
        payload = OtpPayload(**request.model_dump(exclude={"kind"}))
        job_id = await runtime.queue.submit(request.kind, payload)
        return OtpJobAccepted(job_id=job_id, kind=request.kind)

    @router.get("/otp/jobs/{job_id}", response_model=OtpJobStatus)
    async def get_otp_job(job_id: str, runtime: NotificationRuntime = Depends(get_runtime)):
        status = await runtime.queue.get_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job not found")

        return OtpJobStatus(
            job_id=status.job_id,
            kind=status.kind,
            status=status.state.value,
            progress=status.progress,
            attempts_made=status.attempts_made,
            result=status.result,
            error=status.failure_reason,
        )

    @router.get("/otp/stats")
    async def otp_stats(runtime: NotificationRuntime = Depends(get_runtime)):
        return {"queue": runtime.queue.name, "counts": await runtime.queue.counts()}

    return router


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
