"""
Persistence for chat conversations.
Stored in MongoDB collection chats as { history: [messages], created_at, updated_at }.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any

from bson import ObjectId
from pymongo.errors import PyMongoError

import ai_proxy as ap
from ai_proxy.errors import ConversationNotFound, PersistenceError

logger = logging.getLogger(__name__)

COLLECTION = "chats"


@dataclass
class Conversation:
    id: str
    history: list[dict] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None


def _collection(client: Any):
    return ap.common.get_async_db(client)[COLLECTION]


def _from_doc(doc: dict) -> Conversation:
    return Conversation(
        id=str(doc["_id"]),
        history=list(doc.get("history", [])),
        created_at=doc.get("created_at"),
        updated_at=doc.get("updated_at"),
    )


async def create_conversation(client: Any, history: list[dict] | None = None) -> Conversation:
    """Create a conversation holding history (empty by default); returns it with its new id."""
    now = datetime.now(UTC)
    history = list(history or [])
    doc = {"history": history, "created_at": now, "updated_at": now}
    try:
        result = await _collection(client).insert_one(doc)
    except PyMongoError as e:
        raise PersistenceError(f"Could not create chat: {e}") from e
    chat_id = str(result.inserted_id)
    logger.info(f"Created chat {chat_id}")
    return Conversation(id=chat_id, history=history, created_at=now, updated_at=now)


async def load_conversation(client: Any, chat_id: str) -> Conversation:
    """Load a conversation by id. Raises ConversationNotFound for unknown or malformed ids."""
    if not ap.common.is_valid_object_id(chat_id):
        raise ConversationNotFound(chat_id)
    try:
        doc = await _collection(client).find_one({"_id": ObjectId(chat_id)})
    except PyMongoError as e:
        raise PersistenceError(f"Could not load chat {chat_id}: {e}") from e
    if not doc:
        raise ConversationNotFound(chat_id)
    return _from_doc(doc)


async def save_conversation(client: Any, conversation: Conversation) -> None:
    """Write the conversation's full history. The chat must exist."""
    now = datetime.now(UTC)
    try:
        result = await _collection(client).update_one(
            {"_id": ObjectId(conversation.id)},
            {"$set": {"history": conversation.history, "updated_at": now}},
        )
    except PyMongoError as e:
        raise PersistenceError(f"Could not save chat {conversation.id}: {e}") from e
    if result.matched_count == 0:
        raise ConversationNotFound(conversation.id)
    conversation.updated_at = now
    logger.debug(f"Saved chat {conversation.id} ({len(conversation.history)} messages)")


async def delete_conversation(client: Any, chat_id: str) -> None:
    """Delete a conversation. Raises ConversationNotFound if nothing was deleted."""
    if not ap.common.is_valid_object_id(chat_id):
        raise ConversationNotFound(chat_id)
    try:
        result = await _collection(client).delete_one({"_id": ObjectId(chat_id)})
    except PyMongoError as e:
        raise PersistenceError(f"Could not delete chat {chat_id}: {e}") from e
    if result.deleted_count == 0:
        raise ConversationNotFound(chat_id)
    logger.info(f"Deleted chat {chat_id}")
