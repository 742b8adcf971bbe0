from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from resume_batcher.exceptions import CapacityExceeded, ValidationError
from resume_batcher.service import ProcessingSystem


# --- Pydantic Models for Requests ---
class ProcessBatchRequest(BaseModel):
    documents: List[Dict[str, Any]] = Field(..., description="Document payloads (text or base64 content)")
    context: str = Field(default="", description="Job description shared by every document")
    priority: str = Field(default="normal", description="urgent, high, normal or low")
    source: str = Field(default="api", description="Producer label")


class ControlRequest(BaseModel):
    action: str = Field(..., description="pause, resume or stop")


def create_app(system: ProcessingSystem, manage_lifecycle: bool = True) -> FastAPI:
    """Build the HTTP app around an existing processing system.

    Args:
        system: The processing system to expose
        manage_lifecycle: Start the system on startup and stop it on shutdown
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            system.start()
        yield
        if manage_lifecycle:
            system.stop()

    app = FastAPI(title="Resume Batcher", lifespan=lifespan)
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"message": "Resume Batcher API", "docs": "/docs", "health": "/health"}

    @app.post("/process-batch")
    def process_batch(request: ProcessBatchRequest):
        if not request.documents:
            raise HTTPException(status_code=400, detail="At least one document is required")
        try:
            ids = system.queue_documents(
                request.documents,
                priority=request.priority,
                context=request.context,
                source=request.source,
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except CapacityExceeded as e:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail={
                    "code": "QUEUE_FULL",
                    "message": str(e),
                    "max_size": e.max_size,
                    "queued": e.queued,
                    "requested": e.requested,
                },
            )

        return {
            "success": True,
            "message": f"Queued {len(ids)} document(s) for processing",
            "queue_ids": ids,
            "skipped_duplicates": len(request.documents) - len(ids),
            "estimated_completion_time": system.estimate_completion_time(len(ids)) if ids else None,
        }

    @app.get("/status")
    def get_status():
        return system.get_status()

    @app.get("/queue")
    def get_queue(status: Optional[str] = None, priority: Optional[str] = None):
        try:
            return system.get_queue_details(status=status, priority=priority)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.post("/control")
    def control(request: ControlRequest):
        try:
            return system.control(request.action)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @app.get("/export-stats")
    def export_stats():
        return system.export_statistics()

    @app.get("/health")
    def health():
        return system.health_check()

    @app.get("/capacity")
    def capacity():
        return system.capacity()

    @app.get("/estimate/{count}")
    def estimate(count: int):
        try:
            estimated_time = system.estimate_completion_time(count)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        queue_status = system.queue.get_status()
        return {
            "count": count,
            "estimated_time": estimated_time,
            "current_throughput": queue_status["statistics"]["queue_throughput"],
            "queue_position": queue_status["total_queued"],
        }

    return app
