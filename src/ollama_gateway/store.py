"""CRUD wrappers for conversations and messages.

Results are returned as plain dicts (detached from the session) so route
handlers and the prompt composer never touch ORM state.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, func, select

from .db import Database
from .errors import NotFoundError, ValidationError
from .models import Conversation, Message, MessageRole, utcnow

logger = logging.getLogger(__name__)

ROLES = {r.value for r in MessageRole}


def message_to_dict(m: Message) -> Dict[str, Any]:
    return {
        "id": m.id,
        "conversation_id": m.conversation_id,
        "role": m.role,
        "content": m.content,
        "metadata": m.meta,
        "created_at": m.created_at,
    }


def conversation_to_dict(c: Conversation) -> Dict[str, Any]:
    return {
        "id": c.id,
        "title": c.title,
        "created_at": c.created_at,
        "updated_at": c.updated_at,
    }


def _require_conversation(session: Session, conversation_id: int) -> Conversation:
    conversation = session.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


def _ordered_messages(session: Session, conversation_id: int) -> List[Message]:
    return list(
        session.exec(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(col(Message.created_at), col(Message.id))
        ).all()
    )


class ConversationStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def list(self) -> List[Dict[str, Any]]:
        """All conversations, newest first, with message count and last message date."""
        stmt = (
            select(Conversation, func.count(Message.id), func.max(Message.created_at))
            .join(Message, Message.conversation_id == Conversation.id, isouter=True)
            .group_by(Conversation.id)
            .order_by(col(Conversation.created_at).desc(), col(Conversation.id).desc())
        )
        with self.db.session() as session:
            rows = session.exec(stmt).all()
            out = []
            for conversation, count, last_date in rows:
                item = conversation_to_dict(conversation)
                item["message_count"] = int(count or 0)
                item["last_message_date"] = last_date
                out.append(item)
        return out

    def get(self, conversation_id: int) -> Dict[str, Any]:
        """One conversation with its messages in chronological order."""
        with self.db.session() as session:
            conversation = _require_conversation(session, conversation_id)
            item = conversation_to_dict(conversation)
            item["messages"] = [message_to_dict(m) for m in _ordered_messages(session, conversation_id)]
        return item

    def create(self, title: str) -> int:
        conversation = Conversation(title=title)
        with self.db.session() as session:
            session.add(conversation)
            session.commit()
            session.refresh(conversation)
            logger.info("Created conversation %s", conversation.id)
            return int(conversation.id)

    def update(self, conversation_id: int, title: str) -> Dict[str, Any]:
        with self.db.session() as session:
            conversation = _require_conversation(session, conversation_id)
            conversation.title = title
            conversation.updated_at = utcnow()
            session.add(conversation)
            session.commit()
            session.refresh(conversation)
            return conversation_to_dict(conversation)

    def delete(self, conversation_id: int) -> bool:
        """Delete a conversation and all of its messages in one transaction."""
        with self.db.session() as session:
            conversation = _require_conversation(session, conversation_id)
            try:
                # cascade="all, delete-orphan" removes the messages in the same flush
                session.delete(conversation)
                session.commit()
            except SQLAlchemyError:
                session.rollback()
                logger.exception("Deleting conversation %s failed; rolled back", conversation_id)
                raise
        logger.info("Deleted conversation %s", conversation_id)
        return True


class MessageStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def list_for(self, conversation_id: int) -> List[Dict[str, Any]]:
        """Messages of a conversation, oldest first."""
        with self.db.session() as session:
            _require_conversation(session, conversation_id)
            return [message_to_dict(m) for m in _ordered_messages(session, conversation_id)]

    def add(
        self,
        conversation_id: int,
        role: str,
        content: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Insert a message and bump the conversation's ``updated_at``."""
        if role not in ROLES:
            raise ValidationError(f"Invalid role {role!r}; expected one of {sorted(ROLES)}")

        with self.db.session() as session:
            conversation = _require_conversation(session, conversation_id)
            message = Message(
                conversation_id=conversation_id,
                role=role,
                content=content,
                meta=dict(metadata) if metadata else None,
            )
            conversation.updated_at = utcnow()
            session.add(message)
            session.add(conversation)
            session.commit()
            session.refresh(message)
            return message_to_dict(message)

    def get(self, conversation_id: int, message_id: int) -> Dict[str, Any]:
        with self.db.session() as session:
            message = session.get(Message, message_id)
            if message is None or message.conversation_id != conversation_id:
                raise NotFoundError(f"Message {message_id} not found in conversation {conversation_id}")
            return message_to_dict(message)

    def last_user_message(self, conversation_id: int) -> Optional[Dict[str, Any]]:
        with self.db.session() as session:
            _require_conversation(session, conversation_id)
            message = session.exec(
                select(Message)
                .where(Message.conversation_id == conversation_id, Message.role == MessageRole.USER.value)
                .order_by(col(Message.created_at).desc(), col(Message.id).desc())
                .limit(1)
            ).first()
            return message_to_dict(message) if message is not None else None

    def delete(self, conversation_id: int, message_id: int) -> bool:
        with self.db.session() as session:
            message = session.get(Message, message_id)
            if message is None or message.conversation_id != conversation_id:
                raise NotFoundError(f"Message {message_id} not found in conversation {conversation_id}")
            session.delete(message)
            session.commit()
        return True

    def delete_all(self, conversation_id: int) -> int:
        """Remove every message of a conversation; returns how many went."""
        with self.db.session() as session:
            _require_conversation(session, conversation_id)
            doomed = _ordered_messages(session, conversation_id)
            for message in doomed:
                session.delete(message)
            session.commit()
        return len(doomed)
