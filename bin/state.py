"""DeepChat conversation state: data model, JSON serialization, persisted store.

State data model and persistence:
  - Message / Conversation records and their camelCase JSON form
  - ConversationStore: create, select, delete, rename, pin, append
  - Persistence to the durable KV store after every mutation
  - sort_for_display ordering helper for list views
"""

from __future__ import annotations

import dataclasses
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from errors import StorageError
from search import WebSearchResult
from storage import KeyValueStore

logger = logging.getLogger("deepchat.state")


# ---------------------------------------------------------------------------
# State-level constants
# ---------------------------------------------------------------------------
CONVERSATIONS_KEY = "deepchat_conversations"
SELECTED_MODEL_KEY = "deepchat_selected_model"
PLACEHOLDER_TITLE = "New Chat"
TITLE_MAX_CHARS = 50


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class Message:
    """One chat turn; immutable once appended."""

    id: str
    role: str  # "user" | "assistant"
    content: str
    timestamp: int
    images: Optional[tuple] = None  # inline data URIs
    web_search_results: Optional[tuple] = None  # WebSearchResult, ...

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.images:
            out["images"] = list(self.images)
        if self.web_search_results:
            out["webSearchResults"] = [r.to_dict() for r in self.web_search_results]
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        role = data.get("role")
        if role not in ("user", "assistant"):
            raise ValueError(f"Invalid message role: {role!r}")
        images = data.get("images")
        results = data.get("webSearchResults")
        return cls(
            id=str(data["id"]),
            role=role,
            content=str(data.get("content", "")),
            timestamp=int(data.get("timestamp", 0)),
            images=tuple(str(i) for i in images) if images else None,
            web_search_results=tuple(WebSearchResult.from_dict(r) for r in results) if results else None,
        )


def make_message(role: str, content: str, *, images: Iterable[str] | None = None,
                 web_search_results: Iterable[WebSearchResult] | None = None,
                 clock: Callable[[], int] = now_ms) -> Message:
    """Build a Message with a fresh id and timestamp."""
    images = tuple(images) if images else None
    results = tuple(web_search_results) if web_search_results else None
    return Message(id=new_id(), role=role, content=content, timestamp=clock(),
                   images=images, web_search_results=results)


@dataclass
class Conversation:
    id: str
    model_id: str
    created_at: int
    updated_at: int
    title: str = PLACEHOLDER_TITLE
    messages: List[Message] = field(default_factory=list)
    pinned: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "modelId": self.model_id,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "pinned": self.pinned,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or PLACEHOLDER_TITLE),
            model_id=str(data.get("modelId", "")),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=int(data.get("createdAt", 0)),
            updated_at=int(data.get("updatedAt", 0)),
            pinned=bool(data.get("pinned", False)),
        )

    def snapshot(self) -> "Conversation":
        """Copy safe to hand outside the store's lock."""
        return dataclasses.replace(self, messages=list(self.messages))


def derive_title(content: str) -> str:
    """Title from the first TITLE_MAX_CHARS characters of *content*, or the placeholder."""
    title = content[:TITLE_MAX_CHARS]
    return title if title.strip() else PLACEHOLDER_TITLE


def sort_for_display(conversations: Sequence[Conversation]) -> List[Conversation]:
    """Pinned conversations first, then most recently updated first."""
    return sorted(conversations, key=lambda c: (not c.pinned, -c.updated_at))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------
class ConversationStore:
    """Ordered conversation list with one optional current conversation.

    Every mutation runs under one re-entrant lock and ends with save().
    Messages are only ever appended; history is never edited.
    """

    def __init__(self, kv: KeyValueStore, clock: Callable[[], int] = now_ms,
                 default_model_id: str = ""):
        self._kv = kv
        self._clock = clock
        self._lock = threading.RLock()
        self._conversations: List[Conversation] = []
        self.current_id: Optional[str] = None
        self.default_model_id = default_model_id

    # -- reads ---------------------------------------------------------------
    def _find(self, conversation_id: str) -> Optional[Conversation]:
        for conv in self._conversations:
            if conv.id == conversation_id:
                return conv
        return None

    def _require(self, conversation_id: str) -> Conversation:
        conv = self._find(conversation_id)
        if conv is None:
            raise KeyError(f"Unknown conversation: {conversation_id}")
        return conv

    @property
    def conversations(self) -> List[Conversation]:
        with self._lock:
            return [c.snapshot() for c in self._conversations]

    def get(self, conversation_id: str) -> Optional[Conversation]:
        with self._lock:
            conv = self._find(conversation_id)
            return conv.snapshot() if conv else None

    def current(self) -> Optional[Conversation]:
        with self._lock:
            if self.current_id is None:
                return None
            return self.get(self.current_id)

    # -- mutations -----------------------------------------------------------
    def create(self, model_id: str | None = None) -> str:
        """Insert a new empty conversation at the head and make it current."""
        with self._lock:
            ts = self._clock()
            conv = Conversation(id=new_id(), model_id=model_id or self.default_model_id,
                                created_at=ts, updated_at=ts)
            self._conversations.insert(0, conv)
            self.current_id = conv.id
            self.save()
            logger.info("Created conversation %s (model=%s)", conv.id, conv.model_id)
            return conv.id

    def select(self, conversation_id: str) -> None:
        with self._lock:
            if self._find(conversation_id) is None:
                logger.debug("select: unknown conversation %s ignored", conversation_id)
                return
            self.current_id = conversation_id

    def delete(self, conversation_id: str) -> None:
        with self._lock:
            before = len(self._conversations)
            self._conversations = [c for c in self._conversations if c.id != conversation_id]
            if self.current_id == conversation_id:
                self.current_id = None
            if len(self._conversations) != before:
                self.save()

    def rename(self, conversation_id: str, title: str) -> None:
        with self._lock:
            conv = self._require(conversation_id)
            conv.title = title.strip() or PLACEHOLDER_TITLE
            conv.updated_at = self._clock()
            self.save()

    def toggle_pin(self, conversation_id: str) -> bool:
        """Flip the pinned flag; returns the new value."""
        with self._lock:
            conv = self._require(conversation_id)
            conv.pinned = not conv.pinned
            conv.updated_at = self._clock()
            self.save()
            return conv.pinned

    def append(self, conversation_id: str, message: Message) -> None:
        with self._lock:
            conv = self._require(conversation_id)
            if not conv.messages and conv.title == PLACEHOLDER_TITLE:
                conv.title = derive_title(message.content)
            conv.messages.append(message)
            conv.updated_at = self._clock()
            self.save()

    def set_default_model(self, model_id: str) -> None:
        with self._lock:
            self.default_model_id = model_id
            try:
                self._kv.set(SELECTED_MODEL_KEY, model_id)
            except StorageError as exc:
                logger.error("Failed to save default model: %s", exc)

    # -- persistence ---------------------------------------------------------
    def load(self) -> None:
        """Replace in-memory state with the persisted list; corrupt data loads empty."""
        with self._lock:
            self._conversations = []
            self.current_id = None
            try:
                raw = self._kv.get(CONVERSATIONS_KEY)
                model = self._kv.get(SELECTED_MODEL_KEY)
            except StorageError as exc:
                logger.error("Failed to load conversations: %s", exc)
                return
            if model:
                self.default_model_id = model
            if not raw:
                return
            try:
                items = json.loads(raw)
                if not isinstance(items, list):
                    raise ValueError("conversation list is not a JSON array")
                self._conversations = [Conversation.from_dict(c) for c in items]
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                logger.error("Discarding corrupt conversation store: %s", exc)
                self._conversations = []
                return
            logger.info("Loaded %d conversations", len(self._conversations))

    def save(self) -> None:
        """Write the full list; failures are logged and in-memory state stands."""
        with self._lock:
            payload = json.dumps([c.to_dict() for c in self._conversations], ensure_ascii=False)
            try:
                self._kv.set(CONVERSATIONS_KEY, payload)
            except StorageError as exc:
                logger.error("Failed to save conversations: %s", exc)
