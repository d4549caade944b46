import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse, ServerSentEvent

# Import core modules
from husky.core.config import Settings, get_settings
from husky.core.errors import (
    HuskyError,
    NotFoundError,
    PermanentProviderError,
    ValidationError,
)
from husky.core.ingestion import IngestionPipeline, JsonDirectorySource
from husky.core.ingestion.directory_source import DirectorySource
from husky.core.llm.client import LLMGateway, LLMProvider, build_provider
from husky.core.memory import ChatSessionManager, SQLiteStore, SummaryCache
from husky.core.orchestrator import ResponseOrchestrator
from husky.core.retrieval import FaissEngine, RetrievalEngine, VectorIndex

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Husky AI API", version="1.0.0")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global State
class SystemState:
    def __init__(self):
        self.settings: Optional[Settings] = None
        self.gateway: Optional[LLMGateway] = None
        self.index: Optional[VectorIndex] = None
        self.sessions: Optional[ChatSessionManager] = None
        self.orchestrator: Optional[ResponseOrchestrator] = None
        self.ingestion: Optional[IngestionPipeline] = None
        self.scheduler: Optional[asyncio.Task] = None
        self.initialized = False

    def initialize(
        self,
        settings: Optional[Settings] = None,
        provider: Optional[LLMProvider] = None,
        source: Optional[DirectorySource] = None,
    ) -> None:
        """Wire every component. Collaborators can be swapped for tests."""
        self.settings = settings or get_settings()
        self.gateway = LLMGateway(provider or build_provider(self.settings), self.settings)
        store = SQLiteStore(settings=self.settings)
        self.index = VectorIndex(FaissEngine(settings=self.settings))
        self.sessions = ChatSessionManager(
            SummaryCache(store, settings=self.settings), self.gateway, self.settings
        )
        self.orchestrator = ResponseOrchestrator(
            self.sessions,
            RetrievalEngine(self.gateway, self.index, self.settings),
            self.gateway,
            settings=self.settings,
        )
        self.ingestion = IngestionPipeline(
            source or JsonDirectorySource(self.settings.directory_export_path),
            self.gateway,
            self.index,
            self.settings,
        )
        self.initialized = True


state = SystemState()


def _require_initialized() -> None:
    if not state.initialized:
        raise HuskyError("System not initialized")


@app.on_event("startup")
async def startup_event():
    if not state.initialized:
        logger.info("Initializing Husky AI...")
        try:
            state.initialize()
            logger.info("Initialization Complete.")
        except (ValueError, HuskyError) as e:
            logger.error(f"Failed to initialize: {e}")
            return

    interval = state.settings.ingestion_interval_seconds
    if interval > 0:
        state.scheduler = asyncio.create_task(state.ingestion.run_forever(interval))


@app.on_event("shutdown")
async def shutdown_event():
    if state.scheduler is not None:
        state.scheduler.cancel()
        try:
            await state.scheduler
        except asyncio.CancelledError:
            pass
        state.scheduler = None
    if state.sessions is not None:
        await state.sessions.drain()


# --- Error mapping ---


def error_payload(exc: HuskyError) -> Dict[str, Any]:
    if isinstance(exc, ValidationError):
        return {"error": "invalid_request", "retryable": False, "detail": exc.message}
    if isinstance(exc, NotFoundError):
        return {"error": "not_found", "retryable": False, "detail": exc.message}
    if isinstance(exc, PermanentProviderError):
        return {"error": "provider_error", "retryable": False, "detail": exc.message}
    return {"error": "try_again", "retryable": True, "detail": exc.message}


def error_status(exc: HuskyError) -> int:
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, PermanentProviderError):
        return 502
    return 503


@app.exception_handler(HuskyError)
async def husky_error_handler(request: Request, exc: HuskyError):
    if exc.retryable:
        logger.warning(f"{request.url.path} failed, retryable: {exc}")
    status = error_status(exc)
    headers = {}
    retry_after = getattr(exc, "retry_after", None)
    if status == 503 and retry_after:
        headers["Retry-After"] = str(int(retry_after) + 1)
    return JSONResponse(status_code=status, content=error_payload(exc), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "invalid_request",
            "retryable": False,
            "detail": json.loads(json.dumps(exc.errors(), default=str)),
        },
    )


# --- Schemas ---


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ChatRequest(CamelModel):
    thread_id: Optional[str] = Field(default=None, alias="threadId")
    message: str
    user_id: str = Field(alias="userId")


class FeedbackRequest(CamelModel):
    thread_id: str = Field(alias="threadId")
    message_id: str = Field(alias="messageId")
    user_id: str = Field(alias="userId")
    rating: int
    comment: Optional[str] = None


# --- Endpoints ---


@app.get("/api/health")
async def health_check(deep: bool = False):
    if not state.initialized:
        return {"status": "starting", "initialized": False}
    last = state.ingestion.last_report
    health = {
        "status": "healthy",
        "initialized": True,
        "provider": state.gateway.provider.name,
        "circuit": state.gateway.breaker.state,
        "documents": state.index.count(),
        "lastIngestion": last.to_dict() if last else None,
    }
    if deep:
        # Costs one real embedding call
        provider_health = await state.gateway.health_check()
        health["embedding"] = provider_health["embedding"]
        if not provider_health["embedding"]:
            health["status"] = "degraded"
    return health


@app.post("/api/chat")
async def chat_endpoint(req: ChatRequest):
    _require_initialized()
    result = await state.orchestrator.chat(
        message=req.message, user_id=req.user_id, thread_id=req.thread_id
    )
    return result.to_dict()


@app.post("/api/chat/stream")
async def chat_stream_endpoint(req: ChatRequest):
    _require_initialized()
    # Reject malformed input with a 400 before the event stream opens
    state.orchestrator.validate(req.message, req.user_id)

    async def event_generator():
        token_count = 0
        try:
            async for event_type, data in state.orchestrator.chat_stream(
                message=req.message, user_id=req.user_id, thread_id=req.thread_id
            ):
                if event_type == "token":
                    token_count += 1
                    payload = {"type": "token", "content": data}
                else:
                    payload = {"type": "done", **data.to_dict()}
                yield ServerSentEvent(data=json.dumps(payload))
        except HuskyError as e:
            logger.error(f"Stream failed after {token_count} tokens: {e}")
            yield ServerSentEvent(
                data=json.dumps({"type": "error", **error_payload(e)})
            )
            return
        logger.info(f"SSE stream complete: {token_count} token events yielded")

    return EventSourceResponse(event_generator())


@app.post("/api/feedback")
async def feedback_endpoint(req: FeedbackRequest):
    _require_initialized()
    accepted = await state.orchestrator.submit_feedback(
        thread_id=req.thread_id,
        message_id=req.message_id,
        user_id=req.user_id,
        rating=req.rating,
        comment=req.comment,
    )
    return {"accepted": accepted}


@app.get("/api/threads")
async def list_threads(user_id: str = Query(..., alias="userId")):
    _require_initialized()
    return await state.orchestrator.list_threads(user_id)


@app.get("/api/threads/{thread_id}")
async def thread_history(thread_id: str, user_id: str = Query(..., alias="userId")):
    _require_initialized()
    return await state.orchestrator.get_history(thread_id, user_id)


@app.post("/api/ingest")
async def ingest_endpoint():
    _require_initialized()
    report = await state.ingestion.run()
    return report.to_dict()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
