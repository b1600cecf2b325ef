from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from .settings import DEFAULT_RECORD_SETTINGS

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
TITLE_LIMIT = 50
ROLES = ("user", "assistant")

logger = logging.getLogger("webui.store")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def _new_id() -> str:
    return str(uuid4())


def _append_jsonl(path: Path, payload: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload))
        handle.write("\n")


def _iter_jsonl(path: Path, skipped: Optional[List[int]] = None) -> Iterable[Dict]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8") as handle:
        for number, line in enumerate(handle, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                # Usually a torn write left behind by a crash.
                logger.warning("Skipping malformed line %d in %s: %s", number, path, exc)
                if skipped is not None:
                    skipped.append(number)
                continue
            yield entry


@dataclass
class Conversation:
    title: str
    model: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            title=data["title"],
            model=data["model"],
            created_at=parse_timestamp(data["createdAt"]),
            updated_at=parse_timestamp(data["updatedAt"]),
        )


@dataclass
class Message:
    conversation_id: str
    role: str
    content: str
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            conversation_id=data["conversationId"],
            role=data["role"],
            content=data["content"],
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass
class ModelRecord:
    name: str
    display_name: str
    size: Optional[str] = None
    is_available: bool = True
    id: str = field(default_factory=_new_id)
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "displayName": self.display_name,
            "size": self.size,
            "isAvailable": self.is_available,
            "lastUpdated": format_timestamp(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ModelRecord":
        return cls(
            id=data["id"],
            name=data["name"],
            display_name=data["displayName"],
            size=data.get("size"),
            is_available=bool(data.get("isAvailable", True)),
            last_updated=parse_timestamp(data["lastUpdated"]),
        )


@dataclass
class Setting:
    key: str
    value: Any
    id: str = field(default_factory=_new_id)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "key": self.key,
            "value": self.value,
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Setting":
        return cls(
            id=data["id"],
            key=data["key"],
            value=data["value"],
            updated_at=parse_timestamp(data["updatedAt"]),
        )


_RECORD_TYPES = {
    "conversation": Conversation,
    "message": Message,
    "model": ModelRecord,
    "setting": Setting,
}


class RecordStore:
    """
    Keyed record store for conversations, messages, models and settings.

    Records live in memory. When `journal_path` is given every mutation is also
    appended to a JSONL journal which is replayed on construction, so the store
    survives restarts. Once the journal grows beyond `max_journal_lines` it is
    compacted and atomically rewritten.

    Lookups on missing keys return None or False; nothing here raises for a
    missing record.
    """

    def __init__(
        self,
        journal_path: Optional[Path] = None,
        *,
        default_settings: Sequence[Dict[str, Any]] = DEFAULT_RECORD_SETTINGS,
        max_journal_lines: int = 16384,
    ) -> None:
        self.journal_path = journal_path
        self.max_journal_lines = max_journal_lines
        self._lock = threading.RLock()
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, Message] = {}
        self._models: Dict[str, ModelRecord] = {}
        # Settings are keyed by their natural key rather than id.
        self._settings: Dict[str, Setting] = {}
        self._journal_lines = 0
        if self.journal_path is not None:
            self._replay()
        self._seed_settings(default_settings)

    # Conversations

    def get_conversations(self) -> List[Conversation]:
        with self._lock:
            return sorted(
                self._conversations.values(),
                key=lambda item: item.updated_at,
                reverse=True,
            )

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            return self._conversations.get(conversation_id)

    def create_conversation(self, *, title: str, model: str) -> Conversation:
        conversation = Conversation(title=title, model=model)
        conversation.updated_at = conversation.created_at
        with self._lock:
            self._put("conversation", conversation)
        logger.debug("Created conversation %s (model=%s)", conversation.id, model)
        return conversation

    def update_conversation(self, conversation_id: str, **changes: Any) -> Optional[Conversation]:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return None
            for name in ("title", "model"):
                if name in changes and changes[name] is not None:
                    setattr(conversation, name, changes[name])
            conversation.updated_at = utcnow()
            self._put("conversation", conversation)
            return conversation

    def delete_conversation(self, conversation_id: str) -> bool:
        with self._lock:
            if conversation_id not in self._conversations:
                return False
            self._delete_messages_locked(conversation_id)
            self._remove("conversation", conversation_id)
        logger.debug("Deleted conversation %s", conversation_id)
        return True

    # Messages

    def get_messages(self, conversation_id: str) -> List[Message]:
        with self._lock:
            # sorted() is stable, so equal timestamps keep insertion order.
            return sorted(
                (
                    message
                    for message in self._messages.values()
                    if message.conversation_id == conversation_id
                ),
                key=lambda item: item.timestamp,
            )

    def create_message(self, *, conversation_id: str, role: str, content: str) -> Message:
        if role not in ROLES:
            raise ValueError(f"Unsupported message role: {role!r}")
        message = Message(conversation_id=conversation_id, role=role, content=content)
        with self._lock:
            self._put("message", message)
            conversation = self._conversations.get(conversation_id)
            if conversation is not None:
                conversation.updated_at = message.timestamp
                self._put("conversation", conversation)
        return message

    def delete_messages(self, conversation_id: str) -> bool:
        with self._lock:
            return self._delete_messages_locked(conversation_id) > 0

    def _delete_messages_locked(self, conversation_id: str) -> int:
        doomed = [
            message.id
            for message in self._messages.values()
            if message.conversation_id == conversation_id
        ]
        for message_id in doomed:
            self._remove("message", message_id)
        return len(doomed)

    # Models

    def get_models(self) -> List[ModelRecord]:
        with self._lock:
            return sorted(self._models.values(), key=lambda item: item.name)

    def get_model(self, name: str) -> Optional[ModelRecord]:
        with self._lock:
            return self._find_model(name)

    def create_or_update_model(
        self,
        *,
        name: str,
        display_name: Optional[str] = None,
        size: Optional[str] = None,
        is_available: bool = True,
    ) -> ModelRecord:
        with self._lock:
            existing = self._find_model(name)
            if existing is not None:
                existing.display_name = display_name or existing.display_name
                if size is not None:
                    existing.size = size
                existing.is_available = is_available
                existing.last_updated = utcnow()
                self._put("model", existing)
                return existing
            model = ModelRecord(
                name=name,
                display_name=display_name or name,
                size=size,
                is_available=is_available,
            )
            self._put("model", model)
            return model

    def delete_model(self, name: str) -> bool:
        with self._lock:
            model = self._find_model(name)
            if model is None:
                return False
            self._remove("model", model.id)
            return True

    def _find_model(self, name: str) -> Optional[ModelRecord]:
        return next((model for model in self._models.values() if model.name == name), None)

    # Settings

    def get_settings(self) -> List[Setting]:
        with self._lock:
            return list(self._settings.values())

    def get_setting(self, key: str) -> Optional[Setting]:
        with self._lock:
            return self._settings.get(key)

    def set_setting(self, key: str, value: Any) -> Setting:
        with self._lock:
            existing = self._settings.get(key)
            if existing is not None:
                existing.value = value
                existing.updated_at = utcnow()
                self._put("setting", existing)
                return existing
            setting = Setting(key=key, value=value)
            self._put("setting", setting)
            return setting

    def _seed_settings(self, defaults: Sequence[Dict[str, Any]]) -> None:
        with self._lock:
            for entry in defaults:
                if entry["key"] not in self._settings:
                    value = json.loads(json.dumps(entry["value"]))
                    self._put("setting", Setting(key=entry["key"], value=value))

    # Journal plumbing

    def _collection(self, kind: str) -> Dict[str, Any]:
        return {
            "conversation": self._conversations,
            "message": self._messages,
            "model": self._models,
            "setting": self._settings,
        }[kind]

    @staticmethod
    def _record_key(kind: str, record: Any) -> str:
        return record.key if kind == "setting" else record.id

    def _put(self, kind: str, record: Any) -> None:
        self._collection(kind)[self._record_key(kind, record)] = record
        self._journal({"op": "put", "kind": kind, "record": record.to_dict()})

    def _remove(self, kind: str, key: str) -> None:
        self._collection(kind).pop(key, None)
        self._journal({"op": "delete", "kind": kind, "key": key})

    def _journal(self, entry: Dict[str, Any]) -> None:
        if self.journal_path is None:
            return
        _append_jsonl(self.journal_path, entry)
        self._journal_lines += 1
        if self._journal_lines > self.max_journal_lines:
            self.compact()

    def _replay(self) -> None:
        assert self.journal_path is not None
        count = 0
        skipped: List[int] = []
        for entry in _iter_jsonl(self.journal_path, skipped):
            count += 1
            kind = entry.get("kind") if isinstance(entry, dict) else None
            if kind not in _RECORD_TYPES:
                logger.warning("Skipping journal entry with unknown kind %r", kind)
                continue
            collection = self._collection(kind)
            if entry.get("op") == "put":
                record = _RECORD_TYPES[kind].from_dict(entry["record"])
                collection[self._record_key(kind, record)] = record
            elif entry.get("op") == "delete":
                collection.pop(entry.get("key"), None)
        self._journal_lines = count
        logger.info(
            "Replayed %d journal entries from %s (%d conversations, %d messages)",
            count,
            self.journal_path,
            len(self._conversations),
            len(self._messages),
        )
        if skipped:
            # Rewrite so later appends do not land on a torn line.
            self.compact()

    def compact(self) -> None:
        """
        Rewrite the journal so it holds exactly one put per live record.
        """
        if self.journal_path is None:
            return
        with self._lock:
            tmp_path = self.journal_path.with_suffix(".tmp")
            lines = 0
            with tmp_path.open("w", encoding="utf-8") as handle:
                for kind in _RECORD_TYPES:
                    for record in self._collection(kind).values():
                        handle.write(json.dumps({"op": "put", "kind": kind, "record": record.to_dict()}))
                        handle.write("\n")
                        lines += 1
            os.replace(tmp_path, self.journal_path)
            self._journal_lines = lines
        logger.debug("Compacted journal %s to %d entries", self.journal_path, lines)


def build_title(prompt: str, limit: int = TITLE_LIMIT) -> str:
    """
    Derive a conversation title from the first user prompt.
    """
    text = prompt or ""
    if not text.strip():
        return "New Chat"
    return text[:limit] + ("..." if len(text) > limit else "")
