"""
Conversation persistence.

Conversations are stored without their audio; only text and the tokens/sec
metric survive a reload. Preferences (live mode, capture toggle, ...) share
the same document.
"""

from __future__ import annotations

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

import msgspec
import structlog

from src.voicechat.session_types import Message, Sender

logger = structlog.get_logger(__name__)


class MessageRecord(msgspec.Struct, omit_defaults=True):
    sender: str
    text: str = ""
    metrics_per_second: Optional[float] = None


class ConversationRecord(msgspec.Struct):
    id: str
    title: str
    created_at: float
    updated_at: float
    messages: List[MessageRecord] = msgspec.field(default_factory=list)


class StoreDocument(msgspec.Struct):
    conversations: List[ConversationRecord] = msgspec.field(default_factory=list)
    preferences: dict[str, Any] = msgspec.field(default_factory=dict)


_document_decoder = msgspec.json.Decoder(StoreDocument)
_document_encoder = msgspec.json.Encoder()


@dataclass(frozen=True)
class ConversationSummary:
    id: str
    title: str
    created_at: float
    updated_at: float
    message_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "message_count": self.message_count,
        }


def make_title(messages: List[Message], max_chars: int = 40) -> str:
    """First user message, truncated."""
    for message in messages:
        if message.sender == Sender.USER and message.text.strip():
            text = " ".join(message.text.split())
            if len(text) > max_chars:
                return text[:max_chars].rstrip() + "..."
            return text
    return "New conversation"


class ConversationStore(ABC):
    """Persistence collaborator for conversations and preferences."""

    @abstractmethod
    def list_conversations(self) -> List[ConversationSummary]:
        """Newest first."""
        raise NotImplementedError

    @abstractmethod
    def load(self, conversation_id: str) -> List[Message]:
        """Messages of a conversation; empty for unknown ids."""
        raise NotImplementedError

    @abstractmethod
    def save(self, conversation_id: str, messages: List[Message], *, title: Optional[str] = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def delete(self, conversation_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_preference(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    @abstractmethod
    def set_preference(self, key: str, value: Any) -> None:
        raise NotImplementedError


class DocumentConversationStore(ConversationStore):
    """
    Store backed by a single StoreDocument.

    Subclasses decide where the document lives by implementing `_read` and
    `_write`.
    """

    def __init__(self, *, title_chars: int = 40):
        self._title_chars = title_chars

    @abstractmethod
    def _read(self) -> StoreDocument:
        raise NotImplementedError

    @abstractmethod
    def _write(self, document: StoreDocument) -> None:
        raise NotImplementedError

    def list_conversations(self) -> List[ConversationSummary]:
        document = self._read()
        records = sorted(document.conversations, key=lambda r: r.updated_at, reverse=True)
        return [
            ConversationSummary(
                id=r.id,
                title=r.title,
                created_at=r.created_at,
                updated_at=r.updated_at,
                message_count=len(r.messages),
            )
            for r in records
        ]

    def load(self, conversation_id: str) -> List[Message]:
        record = self._find(self._read(), conversation_id)
        if record is None:
            logger.debug("Conversation not found", conversation_id=conversation_id)
            return []
        return [
            Message.from_dict(
                {"sender": m.sender, "text": m.text, "metrics_per_second": m.metrics_per_second}
            )
            for m in record.messages
        ]

    def save(self, conversation_id: str, messages: List[Message], *, title: Optional[str] = None) -> None:
        document = self._read()
        now = time.time()
        records = [
            MessageRecord(
                sender=m.sender.value,
                text=m.text,
                metrics_per_second=m.metrics_per_second,
            )
            for m in messages
        ]

        record = self._find(document, conversation_id)
        if record is None:
            record = ConversationRecord(
                id=conversation_id,
                title=title or make_title(messages, self._title_chars),
                created_at=now,
                updated_at=now,
            )
            document.conversations.append(record)
        elif title:
            record.title = title

        record.messages = records
        record.updated_at = now
        self._write(document)

        logger.debug("Conversation saved", conversation_id=conversation_id, messages=len(records))

    def delete(self, conversation_id: str) -> bool:
        document = self._read()
        remaining = [r for r in document.conversations if r.id != conversation_id]
        if len(remaining) == len(document.conversations):
            return False
        document.conversations = remaining
        self._write(document)
        logger.info("Conversation deleted", conversation_id=conversation_id)
        return True

    def get_preference(self, key: str, default: Any = None) -> Any:
        return self._read().preferences.get(key, default)

    def set_preference(self, key: str, value: Any) -> None:
        document = self._read()
        document.preferences[key] = value
        self._write(document)

    @staticmethod
    def _find(document: StoreDocument, conversation_id: str) -> Optional[ConversationRecord]:
        for record in document.conversations:
            if record.id == conversation_id:
                return record
        return None


class InMemoryConversationStore(DocumentConversationStore):
    def __init__(self, *, title_chars: int = 40):
        super().__init__(title_chars=title_chars)
        self._document = StoreDocument()

    def _read(self) -> StoreDocument:
        return self._document

    def _write(self, document: StoreDocument) -> None:
        self._document = document


class JsonConversationStore(DocumentConversationStore):
    """
    JSON file store.

    A missing file is an empty store. A corrupt file is logged and treated as
    empty; it is only overwritten on the next save.

    Reads and writes are synchronous and run on the caller's thread. The
    document holds message text and preferences only (audio is stripped), so
    a save stays small. Callers that need a load to observe the previous save,
    like switching conversations, depend on that ordering.
    """

    def __init__(self, path: str | os.PathLike[str], *, title_chars: int = 40):
        super().__init__(title_chars=title_chars)
        self.path = Path(path)

    def _read(self) -> StoreDocument:
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return StoreDocument()

        if not raw.strip():
            return StoreDocument()

        try:
            return _document_decoder.decode(raw)
        except msgspec.DecodeError as e:
            logger.warning("Conversation store unreadable; starting empty", path=str(self.path), error=str(e))
            return StoreDocument()

    def _write(self, document: StoreDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_bytes(_document_encoder.encode(document))
        os.replace(tmp_path, self.path)
