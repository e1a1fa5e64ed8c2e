"""
FastAPI Application Module

HTTP surface of the memory-augmented chat service.

Key Features:
- Chat and message endpoints driving the turn orchestrator
- Memory inspection, search, export/import and clearing per user and session
- Background memory extraction drained on shutdown
- Structured logging, Prometheus metrics and OpenTelemetry tracing

Callers identify themselves with the ``X-Session-Id`` and ``X-User-Id``
headers; without a user id the session is treated as an anonymous user.
"""

import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CollectorRegistry, Counter, generate_latest
from pydantic import BaseModel
from structlog import get_logger

from ..config import Settings
from ..domain.errors import ChatNotFound, ValidationError
from ..domain.models import Chat, MemoryRecord, MemoryScope, MemoryStats, Message, Role, ScoredMemory
from ..repositories.base import ChatRepository, MemoryStore
from ..repositories.chroma import ChromaMemoryStore
from ..repositories.memory import InMemoryChatRepository
from ..repositories.vector import InMemoryVectorStore, build_embedder
from ..services.chat import ChatOrchestrator
from ..services.extraction import MemoryExtractor
from ..services.llm import CompletionClient
from ..services.memory import MemoryService, ScopeLocks
from ..services.tasks import BackgroundTaskRunner

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
PROCESSING_TIME = Counter("processing_time_seconds", "Total processing time", registry=CUSTOM_REGISTRY)
FALLBACK_REPLIES = Counter(
    "fallback_replies_total", "Turns answered with an apology", registry=CUSTOM_REGISTRY
)

DEFAULT_SESSION_ID = "default"
SYSTEM_GREETING = "You are a helpful assistant."

logger = get_logger()


class ChatCreate(BaseModel):
    title: Optional[str] = None


class ChatUpdate(BaseModel):
    title: str


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""
    content: str


class TurnResponse(BaseModel):
    messages: List[Message]
    debug: Optional[Dict[str, Any]] = None


class MemoryOverview(BaseModel):
    stats: MemoryStats
    user_memories: List[MemoryRecord]
    session_memories: List[MemoryRecord]


class MemorySearchResults(BaseModel):
    user_memories: List[ScoredMemory]
    session_memories: List[ScoredMemory]


# Core service instances
settings = Settings()
repository = InMemoryChatRepository()


def build_memory_store(settings: Settings) -> MemoryStore:
    """Persistent Chroma store when a storage path is set, in-memory otherwise"""
    embedder = build_embedder(settings.gemini_api_key, settings.embedding_model)
    if settings.memory_storage_path:
        return ChromaMemoryStore(Path(settings.memory_storage_path), embedder)
    logger.warning("memory_store_not_persistent")
    return InMemoryVectorStore(embedder)


memory_store = build_memory_store(settings)
completion_client = CompletionClient(settings)
task_runner = BackgroundTaskRunner(
    workers=settings.extraction_workers, max_pending=settings.extraction_queue_size
)
scope_locks = ScopeLocks()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Starts extraction workers and drains them on shutdown"""
    task_runner.start()
    logger.info("application_startup_complete")

    yield

    await task_runner.shutdown(timeout=settings.shutdown_timeout)
    logger.info("application_shutdown_complete")


def get_settings() -> Settings:
    return settings


def get_repository() -> ChatRepository:
    return repository


def get_memory_store() -> MemoryStore:
    return memory_store


def get_completion_client() -> CompletionClient:
    return completion_client


def get_task_runner() -> BackgroundTaskRunner:
    return task_runner


def get_scope_locks() -> ScopeLocks:
    return scope_locks


def get_memory_service(
    x_session_id: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    store: MemoryStore = Depends(get_memory_store),
    client: CompletionClient = Depends(get_completion_client),
    settings: Settings = Depends(get_settings),
    locks: ScopeLocks = Depends(get_scope_locks),
) -> MemoryService:
    """Memory service for the caller's user and session"""
    session_id = x_session_id or DEFAULT_SESSION_ID
    user_id = x_user_id or f"anonymous_{session_id}"
    return MemoryService(
        store,
        settings,
        user_id=user_id,
        session_id=session_id,
        extractor=MemoryExtractor(client, settings),
        locks=locks,
    )


def get_orchestrator(
    repository: ChatRepository = Depends(get_repository),
    client: CompletionClient = Depends(get_completion_client),
    runner: BackgroundTaskRunner = Depends(get_task_runner),
    settings: Settings = Depends(get_settings),
) -> ChatOrchestrator:
    return ChatOrchestrator(repository, client, runner, settings)


app = FastAPI(
    title="Recall Chat API",
    description="Chat API with long-term and session memory",
    version="0.1.0",
    lifespan=lifespan,
)

# Enable cross-origin requests
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Set up request tracing
FastAPIInstrumentor.instrument_app(app)


@app.middleware("http")
async def logging_middleware(request: Request, call_next):
    """Logs and counts requests"""
    logger.info("request_started", method=request.method, path=request.url.path)
    REQUESTS.inc()
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as e:
        ERRORS.inc()
        logger.error("request_failed", path=request.url.path, error=str(e))
        raise
    finally:
        PROCESSING_TIME.inc(time.perf_counter() - started)
    if response.status_code >= 500:
        ERRORS.inc()
    return response


@app.get("/up")
async def health() -> Dict[str, str]:
    return {"status": "ok"}


# -- Chats --------------------------------------------------------------------


@app.get("/chats", response_model=List[Chat])
async def list_chats(repository: ChatRepository = Depends(get_repository)) -> List[Chat]:
    """Lists chats, newest first"""
    try:
        return await repository.list_chats()
    except Exception as e:
        logger.error("list_chats_error", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to list chats")


@app.post("/chats", response_model=Chat, status_code=201)
async def create_chat(
    payload: Optional[ChatCreate] = Body(default=None),
    repository: ChatRepository = Depends(get_repository),
) -> Chat:
    """Starts a new chat seeded with the system message"""
    try:
        chat = await repository.create_chat(payload.title if payload else None)
        await repository.append_message(chat.id, Role.SYSTEM, SYSTEM_GREETING)
        return chat
    except Exception as e:
        logger.error("create_chat_error", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to create chat")


@app.get("/chats/{chat_id}", response_model=Chat)
async def get_chat(chat_id: UUID, repository: ChatRepository = Depends(get_repository)) -> Chat:
    try:
        return await repository.get_chat(chat_id)
    except ChatNotFound:
        raise HTTPException(status_code=404, detail="Chat not found")
    except Exception as e:
        logger.error("get_chat_error", chat_id=str(chat_id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to get chat")


@app.patch("/chats/{chat_id}", response_model=Chat)
async def rename_chat(
    chat_id: UUID,
    payload: ChatUpdate,
    repository: ChatRepository = Depends(get_repository),
) -> Chat:
    try:
        return await repository.rename_chat(chat_id, payload.title)
    except ChatNotFound:
        raise HTTPException(status_code=404, detail="Chat not found")
    except Exception as e:
        logger.error("rename_chat_error", chat_id=str(chat_id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to rename chat")


@app.delete("/chats/{chat_id}", status_code=204)
async def delete_chat(chat_id: UUID, repository: ChatRepository = Depends(get_repository)) -> Response:
    try:
        await repository.delete_chat(chat_id)
    except ChatNotFound:
        raise HTTPException(status_code=404, detail="Chat not found")
    except Exception as e:
        logger.error("delete_chat_error", chat_id=str(chat_id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to delete chat")
    return Response(status_code=204)


# -- Messages -----------------------------------------------------------------


def _visible_roles(include_system: bool) -> List[Role]:
    return [] if include_system else [Role.SYSTEM]


@app.get("/chats/{chat_id}/messages", response_model=List[Message])
async def list_messages(
    chat_id: UUID,
    include_system: bool = False,
    repository: ChatRepository = Depends(get_repository),
) -> List[Message]:
    """Gets a chat's transcript; system messages are hidden unless requested"""
    try:
        return await repository.list_messages(chat_id, exclude_roles=_visible_roles(include_system))
    except ChatNotFound:
        raise HTTPException(status_code=404, detail="Chat not found")
    except Exception as e:
        logger.error("list_messages_error", chat_id=str(chat_id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to get messages")


@app.post("/chats/{chat_id}/messages", response_model=TurnResponse)
async def create_message(
    chat_id: UUID,
    message: MessageCreate,
    debug: bool = False,
    repository: ChatRepository = Depends(get_repository),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
    memory_service: MemoryService = Depends(get_memory_service),
):
    """
    Stores the user's message, generates the assistant reply and schedules
    memory extraction. Returns the updated transcript.
    """
    try:
        result = await orchestrator.handle_turn(chat_id, message.content, memory_service, debug=debug)
        messages = await repository.list_messages(chat_id, exclude_roles=[Role.SYSTEM])
    except ChatNotFound:
        raise HTTPException(status_code=404, detail="Chat not found")
    except ValidationError as e:
        messages = await repository.list_messages(chat_id, exclude_roles=[Role.SYSTEM])
        return JSONResponse(
            status_code=422,
            content=jsonable_encoder({"detail": str(e), "messages": messages}),
        )
    except Exception as e:
        logger.error("create_message_error", chat_id=str(chat_id), error=str(e))
        raise HTTPException(status_code=500, detail="Failed to process message")

    if result.fallback:
        FALLBACK_REPLIES.inc()
    return TurnResponse(messages=messages, debug=result.debug)


# -- Memories -----------------------------------------------------------------


@app.get("/memories", response_model=MemoryOverview)
async def memory_overview(memory_service: MemoryService = Depends(get_memory_service)) -> MemoryOverview:
    return MemoryOverview(
        stats=await memory_service.get_memory_stats(),
        user_memories=await memory_service.get_user_memories(),
        session_memories=await memory_service.get_session_memories(),
    )


@app.get("/memories/search", response_model=MemorySearchResults)
async def search_memories(
    q: str = "", memory_service: MemoryService = Depends(get_memory_service)
) -> MemorySearchResults:
    try:
        return MemorySearchResults(**await memory_service.search_memories(q))
    except Exception as e:
        logger.error("memory_search_error", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to search memories")


@app.get("/memories/statistics", response_model=MemoryStats)
async def memory_statistics(memory_service: MemoryService = Depends(get_memory_service)) -> MemoryStats:
    return await memory_service.get_memory_stats()


@app.get("/memories/export")
async def export_memories(memory_service: MemoryService = Depends(get_memory_service)) -> Dict[str, Any]:
    return await memory_service.export_memories()


@app.post("/memories/import")
async def import_memories(
    payload: Any = Body(...),
    memory_service: MemoryService = Depends(get_memory_service),
) -> Dict[str, Any]:
    try:
        imported = await memory_service.import_memories(payload)
    except ValueError as e:
        logger.warning("memory_import_rejected", error=str(e))
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error("memory_import_error", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to import memories")
    return {"status": "success", "imported": imported}


@app.delete("/memories/{scope}")
async def clear_memories(
    scope: MemoryScope, memory_service: MemoryService = Depends(get_memory_service)
) -> Dict[str, Any]:
    removed = await memory_service.clear_memories(scope)
    return {
        "status": "success",
        "message": f"{scope.value.capitalize()} memories cleared",
        "removed": removed,
    }


@app.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")


def main() -> None:
    import uvicorn

    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
