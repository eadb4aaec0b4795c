"""FastAPI application proxying chat requests to Ollama with stored history."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import __version__
from .client import OllamaClient
from .config import GatewayConfig, load_config
from .db import Database
from .errors import GatewayError, ValidationError
from .prompt import compose_prompt, extract_text
from .relay import SSE_HEADERS
from .store import ConversationStore, MessageStore

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"


# -----------------------------
# Pydantic request bodies
# -----------------------------
class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1)
    model: Optional[str] = Field(default=None, description="Defaults to backend.default_model.")
    # Free-form overrides merged into the backend request body
    options: Dict[str, Any] = Field(default_factory=dict)


class ConversationCreate(BaseModel):
    title: str = Field(default=DEFAULT_TITLE, min_length=1)


class ConversationUpdate(BaseModel):
    title: str = Field(..., min_length=1)


class MessageCreate(BaseModel):
    content: str = Field(..., min_length=1)
    model: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class StoredMessageCreate(BaseModel):
    content: str
    metadata: Optional[Dict[str, Any]] = None


# -----------------------------
# Utilities
# -----------------------------
def _ok(data: Any = None) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _make_client(cfg: GatewayConfig) -> OllamaClient:
    return OllamaClient.from_config(cfg.backend)


def _make_database(cfg: GatewayConfig) -> Database:
    return Database.from_config(cfg.database)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    config: Optional[GatewayConfig] = None,
    client: Optional[OllamaClient] = None,
    database: Optional[Database] = None,
) -> FastAPI:
    cfg = config or GatewayConfig.from_dict(load_config(config_path))

    # Services
    client = client or _make_client(cfg)
    database = database or _make_database(cfg)
    database.init()
    conversations = ConversationStore(database)
    messages = MessageStore(database)
    window = cfg.server.history_window

    app = FastAPI(title="Ollama Gateway", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.server.cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.config = cfg
    app.state.client = client
    app.state.database = database

    @app.exception_handler(GatewayError)
    async def gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("%s %s crashed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "backend": client.base_url,
            "default_model": client.default_model,
        }

    @app.get("/models")
    def list_models() -> Dict[str, Any]:
        return _ok(client.get_models())

    @app.post("/chat")
    def chat(req: ChatRequest) -> Dict[str, Any]:
        return _ok(client.send_message(req.message, req.model, req.options))

    # ---------- conversations ----------
    @app.get("/conversations")
    def list_conversations() -> Dict[str, Any]:
        return _ok(conversations.list())

    @app.post("/conversations")
    def create_conversation(req: Optional[ConversationCreate] = None) -> Dict[str, Any]:
        title = req.title if req is not None else DEFAULT_TITLE
        return _ok({"id": conversations.create(title)})

    @app.get("/conversations/{conversation_id}")
    def get_conversation(conversation_id: int) -> Dict[str, Any]:
        return _ok(conversations.get(conversation_id))

    @app.put("/conversations/{conversation_id}")
    def update_conversation(conversation_id: int, req: ConversationUpdate) -> Dict[str, Any]:
        return _ok(conversations.update(conversation_id, req.title))

    @app.delete("/conversations/{conversation_id}")
    def delete_conversation(conversation_id: int) -> Dict[str, Any]:
        conversations.delete(conversation_id)
        return {"success": True}

    # ---------- messages ----------
    @app.get("/conversations/{conversation_id}/messages")
    def list_messages(conversation_id: int) -> Dict[str, Any]:
        return _ok(messages.list_for(conversation_id))

    @app.delete("/conversations/{conversation_id}/messages")
    def clear_messages(conversation_id: int) -> Dict[str, Any]:
        return _ok({"deleted": messages.delete_all(conversation_id)})

    @app.post("/conversations/{conversation_id}/messages")
    def send_message(conversation_id: int, req: MessageCreate) -> Dict[str, Any]:
        """Store the user message, answer it with history, store the answer."""
        user_msg = messages.add(conversation_id, "user", req.content)

        history = messages.list_for(conversation_id)
        prompt = compose_prompt(history, req.content, window=window, exclude_current=True)
        reply = client.send_message(prompt, req.model, req.options)

        model = reply.get("model") or req.model or client.default_model
        ai_msg = messages.add(conversation_id, "assistant", extract_text(reply), {"model": model})
        return _ok({
            "user_message_id": user_msg["id"],
            "ai_message_id": ai_msg["id"],
            "ai_response": reply,
        })

    @app.post("/conversations/{conversation_id}/messages/user")
    def add_user_message(conversation_id: int, req: StoredMessageCreate) -> Dict[str, Any]:
        msg = messages.add(conversation_id, "user", req.content, req.metadata)
        return _ok({"message_id": msg["id"]})

    @app.post("/conversations/{conversation_id}/messages/assistant")
    @app.post("/conversations/{conversation_id}/assistant")
    def add_assistant_message(conversation_id: int, req: StoredMessageCreate) -> Dict[str, Any]:
        msg = messages.add(conversation_id, "assistant", req.content, req.metadata)
        return _ok({"message_id": msg["id"]})

    # Declared before /messages/{message_id} so "stream" is not read as an id.
    @app.get("/conversations/{conversation_id}/messages/stream")
    def stream_reply(conversation_id: int, model: Optional[str] = Query(default=None)):
        """Answer the latest user message as a server-sent event stream."""
        last_user = messages.last_user_message(conversation_id)
        if last_user is None:
            raise ValidationError("No user message found in this conversation")

        history = messages.list_for(conversation_id)
        cut = next(i for i, m in enumerate(history) if m["id"] == last_user["id"])
        relay = client.stream_message(
            last_user["content"],
            model,
            None,
            history[: cut + 1],
            exclude_current=True,
            window=window,
        )
        logger.info("Streaming reply for conversation %s (%d prior messages)", conversation_id, cut)
        return StreamingResponse(relay.sse(), media_type="text/event-stream", headers=SSE_HEADERS)

    @app.get("/conversations/{conversation_id}/messages/{message_id}")
    def get_message(conversation_id: int, message_id: int) -> Dict[str, Any]:
        return _ok(messages.get(conversation_id, message_id))

    @app.delete("/conversations/{conversation_id}/messages/{message_id}")
    def delete_message(conversation_id: int, message_id: int) -> Dict[str, Any]:
        messages.delete(conversation_id, message_id)
        return {"success": True}

    return app
