"""
FastAPI Backend for the History Tutor Chat

REST endpoints over the chat service:
- Conversation list / create / select / delete
- Merged message view with the syncing flag
- Sending a message (one full turn)
"""

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime
import os
import sys
import time
import logging
import signal

from lib.logger import setup_logging, get_logger

setup_logging(level=logging.INFO, use_colors=True)

logger = get_logger("backend.main")

# Make the history_tutor_chat package importable without installing it
backend_dir = os.path.dirname(os.path.abspath(__file__))
project_root = os.path.dirname(backend_dir)
package_src = os.path.join(project_root, 'history_tutor_chat', 'src')
if os.path.exists(package_src) and package_src not in sys.path:
    sys.path.insert(0, package_src)

from lib.supabase_client import get_supabase_client
from history_tutor_chat.chat_service import ChatService
from history_tutor_chat.config import SUPABASE, Settings, build_chat_service
from history_tutor_chat.errors import StoreReadFailure, StoreWriteFailure, ValidationFailure
from history_tutor_chat.models import Conversation, Message

# Singleton so every request shares one set of caches and locks
_chat_service: Optional[ChatService] = None


def get_chat_service() -> ChatService:
    """Get or create the singleton ChatService."""
    global _chat_service
    if _chat_service is None:
        settings = Settings.from_env()
        supabase = get_supabase_client() if settings.store_backend == SUPABASE else None
        _chat_service = build_chat_service(settings, supabase_client=supabase)
    return _chat_service


app = FastAPI(
    title="History Tutor Chat API",
    description="Lesson-grounded history tutoring chat with optimistic conversation sync",
    version="0.1.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ==================== Pydantic Models ====================

class ChatRequest(BaseModel):
    content: str
    conversation_id: Optional[str] = None


class MessageOut(BaseModel):
    id: Optional[str]
    conversation_id: str
    role: str
    content: str
    timestamp: Optional[datetime] = None
    turn_kind: str
    lesson_ref: Optional[Dict[str, Any]] = None


class ConversationOut(BaseModel):
    id: str
    title: str
    created_at: datetime
    last_message_at: datetime


class MessagesResponse(BaseModel):
    conversation_id: str
    messages: List[MessageOut]
    syncing: bool


class ChatResponse(MessagesResponse):
    reply: Optional[MessageOut] = None


def message_out(message: Message) -> MessageOut:
    ref = message.lesson_ref
    return MessageOut(
        id=message.id,
        conversation_id=message.conversation_id,
        role=message.role.value,
        content=message.content,
        timestamp=message.timestamp,
        turn_kind=message.turn_kind.value,
        lesson_ref={"grade": ref.grade, "lesson": ref.lesson, "title": ref.title} if ref else None,
    )


def conversation_out(conversation: Conversation) -> ConversationOut:
    return ConversationOut(
        id=conversation.id,
        title=conversation.title,
        created_at=conversation.created_at,
        last_message_at=conversation.last_message_at,
    )


def messages_response(service: ChatService, conversation_id: str, messages: List[Message]) -> MessagesResponse:
    return MessagesResponse(
        conversation_id=conversation_id,
        messages=[message_out(m) for m in messages],
        syncing=service.is_syncing(conversation_id),
    )


async def require_conversation(service: ChatService, conversation_id: str) -> Conversation:
    conversation = await service.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


# ==================== Error Mapping ====================

@app.exception_handler(ValidationFailure)
async def validation_failure_handler(request: Request, exc: ValidationFailure):
    logger.warning(f"Rejected request to {request.url.path}", data={"reason": str(exc)})
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(StoreReadFailure)
@app.exception_handler(StoreWriteFailure)
async def store_failure_handler(request: Request, exc: Exception):
    logger.error(f"Store failure on {request.url.path}", error=exc)
    return JSONResponse(status_code=503, content={"detail": "Storage is temporarily unavailable"})


# ==================== API Endpoints ====================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "History Tutor Chat API",
        "version": "0.1.0",
    }


@app.get("/api/conversations")
async def list_conversations(service: ChatService = Depends(get_chat_service)):
    conversations = await service.list_conversations()
    return {"conversations": [conversation_out(c) for c in conversations]}


@app.post("/api/conversations")
async def create_conversation(service: ChatService = Depends(get_chat_service)):
    conversation_id = await service.new_conversation()
    logger.success("Conversation created", {"conversation_id": conversation_id})
    return {"conversation_id": conversation_id}


@app.post("/api/conversations/{conversation_id}/select", response_model=MessagesResponse)
async def select_conversation(conversation_id: str, service: ChatService = Depends(get_chat_service)):
    await require_conversation(service, conversation_id)
    messages = await service.select_conversation(conversation_id)
    return messages_response(service, conversation_id, messages)


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, service: ChatService = Depends(get_chat_service)):
    """Delete a conversation and its messages"""
    await require_conversation(service, conversation_id)
    await service.delete_conversation(conversation_id)
    return {"status": "deleted", "conversation_id": conversation_id}


@app.get("/api/conversations/{conversation_id}/messages", response_model=MessagesResponse)
async def get_messages(conversation_id: str, service: ChatService = Depends(get_chat_service)):
    """Current merged view; no fetch is issued"""
    return messages_response(service, conversation_id, service.get_merged_messages(conversation_id))


@app.post("/api/conversations/{conversation_id}/refresh", response_model=MessagesResponse)
async def refresh_messages(conversation_id: str, service: ChatService = Depends(get_chat_service)):
    messages = await service.refresh(conversation_id)
    return messages_response(service, conversation_id, messages)


@app.post("/api/chat", response_model=ChatResponse)
async def chat(message: ChatRequest, service: ChatService = Depends(get_chat_service)):
    """
    Run one full turn. ``reply`` is this turn's own assistant message (or
    error reply); the merged view holds the whole conversation.
    """
    start = time.time()
    logger.request("POST", "/api/chat", data={"conversation_id": message.conversation_id})

    if not message.content.strip():
        raise ValidationFailure("Message text is empty")

    result = await service.run_message(message.conversation_id, message.content)
    if result is None:
        raise HTTPException(status_code=503, detail="Could not start a conversation")

    conversation_id = result.conversation_id
    messages = service.get_merged_messages(conversation_id)
    reply = result.reply

    logger.response(200, "/api/chat", duration=time.time() - start, data={"conversation_id": conversation_id})
    base = messages_response(service, conversation_id, messages)
    return ChatResponse(
        conversation_id=base.conversation_id,
        messages=base.messages,
        syncing=base.syncing,
        reply=message_out(reply) if reply else None,
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event - cancel pending re-fetches."""
    if _chat_service is not None:
        await _chat_service.close()
        logger.info("🛑 Chat service closed")


if __name__ == "__main__":
    import uvicorn

    def handle_exit(*args):
        """Handle graceful shutdown."""
        logger.section("SERVER SHUTDOWN", {"reason": "signal received"})
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_exit)
    signal.signal(signal.SIGTERM, handle_exit)

    try:
        uvicorn.run(app, host="0.0.0.0", port=8000)
    except KeyboardInterrupt:
        logger.info("🛑 Server stopped.")
        sys.exit(0)
