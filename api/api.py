#!/usr/bin/env python3
"""
FastAPI application for the Memory Engine
REST surface over message recording, context, notes, references,
learning, predictions and the privacy controls
"""

import asyncio
from typing import Optional, List, Dict, Any
from datetime import datetime
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.engine import MemoryEngine
from utils.config_loader import config
from utils.errors import MemoryEngineError, ValidationError
from utils.redis_logger import get_redis_logger

logger = get_redis_logger(__name__)

API_VERSION = "1.0.0"


# Pydantic models for API
class InboundMessage(BaseModel):
    """Inbound chat message"""
    user_id: str = Field(..., description="Opaque user identifier")
    text: str = Field(..., description="Message text")
    type: Optional[str] = Field("text", description="Message type: text, audio, command")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Free-form metadata")

    class Config:
        json_schema_extra = {
            "example": {
                "user_id": "5511999990000",
                "text": "Quero uma dieta com mais proteína",
                "type": "text",
                "metadata": {"session_length": 12}
            }
        }


class NoteRequest(BaseModel):
    """Important information pinned by the user"""
    info: str = Field(..., description="Text to remember")
    category: Optional[str] = Field("general", description="Note category")

    class Config:
        json_schema_extra = {
            "example": {
                "info": "Allergic to peanuts",
                "category": "health"
            }
        }


class InteractionRequest(BaseModel):
    """Interaction event for the learning cycle"""
    type: str = Field(..., description="Interaction type, e.g. message, command, voice_command")
    data: Optional[Dict[str, Any]] = Field(None, description="Interaction payload")
    success: Optional[bool] = Field(True, description="Whether the interaction succeeded")
    feedback: Optional[float] = Field(None, description="Positive for good, negative for bad")

    class Config:
        json_schema_extra = {
            "example": {
                "type": "command",
                "data": {"command": "reminder", "response_time": 1.5},
                "success": True,
                "feedback": 1
            }
        }


class ActionRequest(BaseModel):
    """Executed action, kept so it can be repeated"""
    action: str = Field(..., description="Action name")
    parameters: Optional[Any] = Field(None, description="Action parameters")
    description: Optional[str] = Field(None, description="Human-readable description")

    class Config:
        json_schema_extra = {
            "example": {
                "action": "create_reminder",
                "parameters": {"time": "08:00", "text": "Take vitamins"},
                "description": "Reminder at 08:00: Take vitamins"
            }
        }


class PrivacyRequest(BaseModel):
    """Privacy level selection"""
    level: str = Field(..., description="Privacy level: low, standard or high")
    custom_settings: Optional[Dict[str, Any]] = Field(None, description="Overrides on top of the level")

    class Config:
        json_schema_extra = {
            "example": {
                "level": "high",
                "custom_settings": None
            }
        }


class OptOutRequest(BaseModel):
    """Opt-out request"""
    reason: Optional[str] = Field("user_request", description="Why the user opted out")


class HealthStatus(BaseModel):
    """Health check status"""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")
    uptime: float = Field(..., description="Uptime in seconds")
    store: str = Field(..., description="Active store backend")


async def _periodic_cleanup(engine: MemoryEngine, interval_seconds: int):
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await engine.cleanup_old_data()
            logger.info(f"Periodic cleanup finished: {result}")
        except Exception as e:
            logger.error(f"Periodic cleanup failed: {e}")


def create_app(engine: Optional[MemoryEngine] = None) -> FastAPI:
    """Build the API around an engine (a configured one by default)"""
    engine = engine or MemoryEngine()

    # Lifespan context manager for startup/shutdown
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Memory Engine API...")
        app.state.start_time = datetime.now()
        await engine.init()

        interval = int(engine.config.get('cleanup_interval_seconds', 3600))
        cleanup_task = asyncio.create_task(_periodic_cleanup(engine, interval))

        yield

        logger.info("Shutting down Memory Engine API...")
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await engine.shutdown()

    app = FastAPI(
        title="Memory Engine API",
        description="Conversational memory and personalization engine for chatbots",
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json"
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["*"]
    )

    # Error handlers
    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(MemoryEngineError)
    async def engine_error_handler(request: Request, exc: MemoryEngineError):
        logger.error(f"Engine error on {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content=exc.to_dict())

    # API Endpoints

    @app.get("/", tags=["General"])
    async def root():
        """Root endpoint with API information"""
        return {
            "name": "Memory Engine API",
            "version": API_VERSION,
            "documentation": "/docs",
            "openapi_spec": "/openapi.json"
        }

    @app.get("/health", response_model=HealthStatus, tags=["General"])
    async def health_check():
        """Health check endpoint"""
        uptime = (datetime.now() - app.state.start_time).total_seconds()
        return HealthStatus(
            status="healthy" if engine.initialized else "starting",
            version=API_VERSION,
            uptime=uptime,
            store=type(engine.store).__name__
        )

    @app.get("/stats", tags=["General"])
    async def stats():
        """Context, evolution and reference statistics"""
        return engine.get_stats()

    @app.post("/messages", tags=["Messages"])
    async def post_message(request: InboundMessage):
        """
        Record an inbound message.

        Runs the full flow: memory, learning cycle and smart reference resolution.
        """
        return await engine.handle_inbound_message(
            request.user_id, request.text, request.type or "text", request.metadata
        )

    @app.get("/users/{user_id}/context", tags=["Context"])
    async def get_context(user_id: str):
        """Current conversational context"""
        context = await engine.memory.get_current_context(user_id)
        if context is None:
            raise HTTPException(status_code=404, detail="No context for this user")
        return context

    @app.delete("/users/{user_id}/context", tags=["Context"])
    async def clear_context(user_id: str):
        """Summarize and reset the current conversation"""
        return await engine.memory.clear_context(user_id)

    @app.post("/users/{user_id}/notes", tags=["Notes"])
    async def save_note(user_id: str, request: NoteRequest):
        """Pin important information"""
        return await engine.memory.save_important_info(user_id, request.info, request.category or "general")

    @app.get("/users/{user_id}/notes", tags=["Notes"])
    async def list_notes(user_id: str, category: Optional[str] = None):
        """Pinned notes, newest first"""
        return await engine.memory.get_important_info(user_id, category)

    @app.get("/users/{user_id}/references", tags=["References"])
    async def find_references(user_id: str, q: str = Query(..., description="Text to look for")):
        """Search the message history for related entries"""
        return await engine.memory.find_smart_references(user_id, q)

    @app.post("/users/{user_id}/interactions", tags=["Learning"])
    async def post_interaction(user_id: str, request: InteractionRequest):
        """Feed one interaction to the learning cycle"""
        return await engine.evolver.update_evolutionary_profile(user_id, {
            "type": request.type,
            "data": request.data or {},
            "success": request.success is not False,
            "feedback": request.feedback
        })

    @app.get("/users/{user_id}/predictions", tags=["Learning"])
    async def get_predictions(user_id: str):
        """Predicted next command, topic and active hour"""
        return await engine.evolver.generate_predictions(user_id)

    @app.get("/users/{user_id}/suggestions", response_model=List[Dict[str, Any]], tags=["Learning"])
    async def get_suggestions(user_id: str):
        """Top personalized suggestions"""
        return await engine.evolver.get_personalized_suggestions(user_id)

    @app.post("/users/{user_id}/actions", tags=["References"])
    async def record_action(user_id: str, request: ActionRequest):
        """Remember an executed action for "do it again" requests"""
        return engine.resolver.record_action(user_id, request.action, request.parameters, request.description)

    @app.get("/users/{user_id}/export", tags=["Privacy"])
    async def export_data(user_id: str):
        """Everything held about the user"""
        return await engine.privacy.export_user_data(user_id)

    @app.put("/users/{user_id}/privacy", tags=["Privacy"])
    async def set_privacy(user_id: str, request: PrivacyRequest):
        """Apply a privacy level"""
        return await engine.privacy.set_user_privacy(user_id, request.level, request.custom_settings)

    @app.get("/users/{user_id}/consents", tags=["Privacy"])
    async def get_consents(user_id: str):
        """Consent history: privacy changes and opt-outs"""
        history = await engine.privacy.get_consent_history(user_id)
        return {"consents": history, "count": len(history)}

    @app.post("/users/{user_id}/opt-out", tags=["Privacy"])
    async def opt_out(user_id: str, request: Optional[OptOutRequest] = None):
        """Stop processing the user and delete their data"""
        reason = request.reason if request and request.reason else "user_request"
        return await engine.privacy.process_opt_out(user_id, reason)

    @app.delete("/users/{user_id}", tags=["Privacy"])
    async def delete_user(user_id: str):
        """Delete all data held about the user"""
        return await engine.privacy.delete_all_user_data(user_id)

    return app


app = create_app()


# Main entry point
if __name__ == "__main__":
    uvicorn.run(
        "api.api:app",
        host=config['api_host'],
        port=config['api_port'],
        log_level=str(config['log_level']).lower()
    )
