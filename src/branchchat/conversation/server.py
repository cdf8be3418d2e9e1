"""
HTTP server for branching conversations.

Exposes :class:`~branchchat.conversation.session.ConversationManager` over a
small REST API so conversations can be driven, branched and navigated
without writing Python.

Endpoints
---------
GET    /health                                         Health / readiness check.
POST   /conversations                                  Create (or resume) a conversation.
GET    /conversations/{id}                             Persisted conversation record.
DELETE /conversations/{id}                             Forget a conversation.
POST   /conversations/{id}/messages                    Send a message and run one turn.
POST   /conversations/{id}/nodes/{node_id}/variants    Edit / resend a message as a new branch.
PUT    /conversations/{id}/nodes/{node_id}/variant     Switch the variant shown at a node.
DELETE /conversations/{id}/messages/{message_id}       Delete one message.

A failed turn is a normal outcome: it is returned with status 200 and
``status="failed"``.  Deleting a message that anchors later content answers
409.

Usage (standalone)::

    from branchchat.config import get_settings
    from branchchat.conversation.server import create_app
    from branchchat.conversation.session import ConversationManager
    import uvicorn

    app = create_app(ConversationManager(get_settings()))
    uvicorn.run(app, host="127.0.0.1", port=8765)
"""

from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from branchchat.conversation.loop import TurnDone
from branchchat.conversation.session import (
    ConversationManager,
    ConversationNotFoundError,
    ConversationSession,
    NodeNotFoundError,
    TurnResult,
)
from branchchat.conversation.tree import (
    CannotDeleteBranchPoint,
    ConversationTree,
    DeleteError,
    migrate,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class CreateConversationRequest(BaseModel):
    """Body for POST /conversations."""

    conversation_id: str | None = Field(
        default=None, description="Id to use. Omit to have one generated."
    )
    model: str | None = Field(default=None, description="Overrides the configured model.")
    system_prompt: str | None = Field(default=None, description="Overrides the system prompt.")
    tools: list[str] | None = Field(
        default=None, description="Tool identifiers to enable. Omit to enable all."
    )
    record: dict[str, Any] | None = Field(
        default=None,
        description="Persisted conversation record to resume (branching or legacy flat form).",
    )


class MessageRequest(BaseModel):
    """Body for POST /conversations/{id}/messages and .../variants."""

    text: str = Field(..., description="User message text.")


class SwitchVariantRequest(BaseModel):
    """Body for PUT /conversations/{id}/nodes/{node_id}/variant."""

    index: int = Field(..., ge=0, description="Zero-based variant index.")


class TurnResponse(BaseModel):
    """Response body for endpoints that run a turn."""

    status: Literal["done", "failed"]
    text: str | None = None
    error: str | None = None
    conversation: dict[str, Any]


class HealthResponse(BaseModel):
    """Response body for GET /health."""

    status: str
    active_conversations: int


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(manager: ConversationManager) -> FastAPI:
    """Create a FastAPI application wrapping *manager*.

    Args:
        manager: A fully initialised ``ConversationManager``.

    Returns:
        A configured ``FastAPI`` application ready to be served or used in
        tests via ``httpx.AsyncClient(transport=httpx.ASGITransport(app=app))``.
    """
    app = FastAPI(
        title="branchchat",
        description="Branching conversations with streaming LLM providers and tool calling.",
        version="0.1.0",
    )

    def _session(conversation_id: str) -> ConversationSession:
        try:
            return manager.get(conversation_id)
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    def _turn_response(session: ConversationSession, result: TurnResult) -> TurnResponse:
        if isinstance(result.outcome, TurnDone):
            return TurnResponse(
                status="done", text=result.outcome.text, conversation=session.to_dict()
            )
        return TurnResponse(
            status="failed", error=result.outcome.error, conversation=session.to_dict()
        )

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Return server health and the number of open conversations."""
        return HealthResponse(status="ok", active_conversations=len(manager))

    @app.post("/conversations", status_code=201)
    async def create_conversation(body: CreateConversationRequest) -> dict[str, Any]:
        """Create a conversation, optionally resuming a persisted record."""
        logger.info("POST /conversations: id=%r model=%r", body.conversation_id, body.model)
        tree = migrate(ConversationTree.from_dict(body.record)) if body.record else None
        try:
            session = manager.create(
                conversation_id=body.conversation_id,
                tree=tree,
                model=body.model,
                system_prompt=body.system_prompt,
                tools=body.tools,
            )
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return session.to_dict()

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str) -> dict[str, Any]:
        """Return the persisted record of a conversation."""
        return _session(conversation_id).to_dict()

    @app.delete("/conversations/{conversation_id}", status_code=204)
    async def delete_conversation(conversation_id: str) -> None:
        """Forget a conversation."""
        logger.info("DELETE /conversations/%s", conversation_id)
        try:
            manager.drop(conversation_id)
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/conversations/{conversation_id}/messages", response_model=TurnResponse)
    async def send_message(conversation_id: str, body: MessageRequest) -> TurnResponse:
        """Append a user message and run one turn."""
        session = _session(conversation_id)
        logger.info("POST /conversations/%s/messages: text=%r", conversation_id, body.text)
        try:
            result = await session.send_message(body.text)
        except Exception as exc:
            logger.error("Unexpected error in send_message: %s", exc, exc_info=True)
            raise HTTPException(status_code=500, detail="Internal server error") from exc
        return _turn_response(session, result)

    @app.post(
        "/conversations/{conversation_id}/nodes/{node_id}/variants",
        response_model=TurnResponse,
    )
    async def edit_message(conversation_id: str, node_id: str, body: MessageRequest) -> TurnResponse:
        """Branch at *node_id* with new text (or the same text to regenerate)."""
        session = _session(conversation_id)
        logger.info("POST /conversations/%s/nodes/%s/variants", conversation_id, node_id)
        try:
            result = await session.edit_message(node_id, body.text)
        except NodeNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except Exception as exc:
            logger.error("Unexpected error in edit_message: %s", exc, exc_info=True)
            raise HTTPException(status_code=500, detail="Internal server error") from exc
        return _turn_response(session, result)

    @app.put("/conversations/{conversation_id}/nodes/{node_id}/variant")
    async def switch_variant(
        conversation_id: str, node_id: str, body: SwitchVariantRequest
    ) -> dict[str, Any]:
        """Show another variant at *node_id*."""
        session = _session(conversation_id)
        try:
            await session.switch_variant(node_id, body.index)
        except NodeNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return session.to_dict()

    @app.delete("/conversations/{conversation_id}/messages/{message_id}")
    async def delete_message(conversation_id: str, message_id: str) -> dict[str, Any]:
        """Delete one message unless it anchors later content."""
        session = _session(conversation_id)
        logger.info("DELETE /conversations/%s/messages/%s", conversation_id, message_id)
        result = await session.delete_message(message_id)
        if isinstance(result, CannotDeleteBranchPoint):
            raise HTTPException(status_code=409, detail=result.reason)
        if isinstance(result, DeleteError):
            raise HTTPException(status_code=404, detail=result.message)
        return session.to_dict()

    return app
