from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from typing import List, Optional, Dict, AsyncGenerator
import os
import logging

logger = logging.getLogger(__name__)

# Local imports
from database import get_db, get_session_factory, init_db
from dtos.message_requests import (
    UserMessageRequest, AssistantMessageRequest, EditMessageRequest,
    RegenerateRequest, NavigateRequest
)
from schemas import (
    ThreadCreate, ThreadUpdate, ThreadResponse,
    MessageResponse, MessageUpdate, ThreadMessage, ModelMessage,
    ChatExport, ImportRequest, ImportResult, StorageStats
)
from services import (
    ThreadService, BranchChatError, ThreadNotFound, MessageNotFound,
    InvalidParent, ConcurrentModification, StorageFailure
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create tables if they don't exist
    try:
        await init_db()
        logger.info("Database tables ready")
    except Exception as e:
        logger.error(f"Failed to initialise database: {e}")
        raise

    yield


app = FastAPI(
    title="Branching Chat Service",
    version="1.0.0",
    lifespan=lifespan
)

# CORS configuration
origins = os.getenv("ALLOWED_ORIGINS", "*").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins if origins != ["*"] else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600
)


ERROR_STATUS = {
    ThreadNotFound: status.HTTP_404_NOT_FOUND,
    MessageNotFound: status.HTTP_404_NOT_FOUND,
    InvalidParent: status.HTTP_400_BAD_REQUEST,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    StorageFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@app.exception_handler(BranchChatError)
async def branch_chat_error_handler(request: Request, exc: BranchChatError) -> JSONResponse:
    status_code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error": type(exc).__name__}
    )


# Dependency to get a thread service for the request
async def get_thread_service(
    session_factory: async_sessionmaker = Depends(get_session_factory)
) -> AsyncGenerator[ThreadService, None]:
    """Request-scoped thread service; pending streaming writes are flushed on exit."""
    service = ThreadService(session_factory)
    try:
        yield service
    finally:
        await service.close()


@app.get("/")
async def root():
    return {"message": "Hello World", "status": "running"}

@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "branchchat"}


@app.get("/health/detailed")
async def detailed_health_check(db: AsyncSession = Depends(get_db)):
    """Comprehensive health check."""
    health_status = {
        "status": "healthy",
        "service": "branchchat",
        "checks": {}
    }

    # Check database connection
    try:
        await db.execute(text("SELECT 1"))
        health_status["checks"]["database"] = {"status": "healthy", "dialect": db.bind.dialect.name}
    except Exception as e:
        health_status["checks"]["database"] = {"status": "unhealthy", "error": str(e)}
        health_status["status"] = "unhealthy"

    return health_status


# Thread management endpoints
@app.post("/threads", response_model=ThreadResponse)
async def create_thread(
    thread: ThreadCreate,
    service: ThreadService = Depends(get_thread_service)
) -> ThreadResponse:
    """Create a new, empty conversation thread."""
    db_thread = await service.create_thread(thread.seed_content)
    return ThreadResponse.model_validate(db_thread)


@app.get("/threads", response_model=List[ThreadResponse])
async def list_threads(
    service: ThreadService = Depends(get_thread_service)
) -> List[ThreadResponse]:
    """List all threads, most recently updated first."""
    threads = await service.list_threads()
    return [ThreadResponse.model_validate(thread) for thread in threads]


@app.get("/threads/{thread_id}", response_model=ThreadResponse)
async def get_thread(
    thread_id: str,
    service: ThreadService = Depends(get_thread_service)
) -> ThreadResponse:
    """Get a specific thread by ID."""
    thread = await service.get_thread(thread_id)
    return ThreadResponse.model_validate(thread)


@app.patch("/threads/{thread_id}", response_model=ThreadResponse)
async def update_thread(
    thread_id: str,
    thread_update: ThreadUpdate,
    service: ThreadService = Depends(get_thread_service)
) -> ThreadResponse:
    """Rename a thread."""
    updated_thread = await service.rename_thread(thread_id, thread_update.title)
    return ThreadResponse.model_validate(updated_thread)


@app.delete("/threads/{thread_id}")
async def delete_thread(
    thread_id: str,
    service: ThreadService = Depends(get_thread_service)
) -> dict:
    """Delete a thread with its messages, attachments and branch state."""
    deleted = await service.delete_thread(thread_id)

    if not deleted:
        raise HTTPException(status_code=404, detail="Thread not found")

    return {"message": "Thread deleted successfully"}


# Conversation endpoints
@app.get("/threads/{thread_id}/conversation", response_model=List[ThreadMessage])
async def get_conversation(
    thread_id: str,
    service: ThreadService = Depends(get_thread_service)
) -> List[ThreadMessage]:
    """Get the active conversation of a thread."""
    return await service.select_thread(thread_id)


@app.get("/threads/{thread_id}/messages", response_model=List[MessageResponse])
async def get_messages(
    thread_id: str,
    service: ThreadService = Depends(get_thread_service)
) -> List[MessageResponse]:
    """Get every message of a thread, including inactive branches."""
    await service.get_thread(thread_id)
    messages = await service.get_messages(thread_id)
    return [MessageResponse.model_validate(m) for m in messages]


@app.get("/threads/{thread_id}/branch-state", response_model=Dict[str, str])
async def get_branch_state(
    thread_id: str,
    service: ThreadService = Depends(get_thread_service)
) -> Dict[str, str]:
    """Get the explicit branch overrides of a thread."""
    await service.get_thread(thread_id)
    return await service.get_branch_state(thread_id)


@app.get("/threads/{thread_id}/context", response_model=List[ModelMessage])
async def get_model_context(
    thread_id: str,
    system_prompt: Optional[str] = None,
    service: ThreadService = Depends(get_thread_service)
) -> List[ModelMessage]:
    """Render the active conversation as model input messages."""
    return await service.build_model_context(thread_id, system_prompt=system_prompt)


@app.post("/threads/{thread_id}/messages", response_model=ThreadMessage, status_code=status.HTTP_201_CREATED)
async def add_user_message(
    thread_id: str,
    req: UserMessageRequest,
    service: ThreadService = Depends(get_thread_service)
) -> ThreadMessage:
    """Append a user message to the active conversation."""
    return await service.add_user_message(req.content, req.attachments, thread_id=thread_id)


@app.post("/threads/{thread_id}/assistant", response_model=ThreadMessage, status_code=status.HTTP_201_CREATED)
async def add_assistant_message(
    thread_id: str,
    req: AssistantMessageRequest,
    service: ThreadService = Depends(get_thread_service)
) -> ThreadMessage:
    """Insert an empty assistant message to be filled by streaming updates."""
    return await service.add_assistant_message(thread_id, req.parent_id, req.model_info)


# Message endpoints
@app.patch("/messages/{message_id}", response_model=ThreadMessage)
async def update_assistant_message(
    message_id: str,
    updates: MessageUpdate,
    service: ThreadService = Depends(get_thread_service)
) -> ThreadMessage:
    """Apply a streaming update to an assistant message on the active path."""
    message = await service.get_message(message_id)
    await service.select_thread(message.thread_id)
    updated = service.update_assistant_message(message_id, updates)
    await service.flush_pending()
    return updated


@app.post("/messages/{message_id}/edit", response_model=ThreadMessage, status_code=status.HTTP_201_CREATED)
async def edit_message(
    message_id: str,
    req: EditMessageRequest,
    service: ThreadService = Depends(get_thread_service)
) -> ThreadMessage:
    """Edit a message by branching: a new sibling becomes active."""
    return await service.edit_user_message(message_id, req.content, req.attachments)


@app.post("/messages/{message_id}/regenerate", response_model=ThreadMessage, status_code=status.HTTP_201_CREATED)
async def regenerate_message(
    message_id: str,
    req: RegenerateRequest,
    service: ThreadService = Depends(get_thread_service)
) -> ThreadMessage:
    """Create a new assistant sibling to be filled by a fresh generation."""
    message = await service.regenerate_assistant(message_id, req.model_info)

    if message is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only existing assistant messages can be regenerated"
        )

    return message


@app.post("/messages/{message_id}/navigate", response_model=List[ThreadMessage])
async def navigate_branch(
    message_id: str,
    req: NavigateRequest,
    service: ThreadService = Depends(get_thread_service)
) -> List[ThreadMessage]:
    """Switch to the previous or next sibling and return the active conversation."""
    message = await service.get_message(message_id)
    await service.navigate_branch(message_id, req.direction)
    return await service.get_active_conversation(message.thread_id)


@app.get("/messages/{message_id}/siblings", response_model=List[MessageResponse])
async def get_siblings(
    message_id: str,
    service: ThreadService = Depends(get_thread_service)
) -> List[MessageResponse]:
    """Get the sibling group of a message in creation order."""
    siblings = await service.get_siblings(message_id)

    if not siblings:
        raise HTTPException(status_code=404, detail="Message not found")

    return [MessageResponse.model_validate(m) for m in siblings]


# Data management endpoints
@app.get("/export", response_model=ChatExport)
async def export_chats(
    service: ThreadService = Depends(get_thread_service)
) -> ChatExport:
    """Export all chat data."""
    return await service.export_all_chats()


@app.post("/import", response_model=ImportResult)
async def import_chats(
    req: ImportRequest,
    service: ThreadService = Depends(get_thread_service)
) -> ImportResult:
    """Import chat data from a backup."""
    return await service.import_chats(req.data, req.strategy)


@app.get("/stats", response_model=StorageStats)
async def get_stats(
    service: ThreadService = Depends(get_thread_service)
) -> StorageStats:
    """Storage statistics."""
    return await service.get_stats()


@app.delete("/data")
async def delete_all_data(
    service: ThreadService = Depends(get_thread_service)
) -> dict:
    """Delete all threads and messages."""
    await service.delete_all_data()
    return {"message": "All data deleted successfully"}
