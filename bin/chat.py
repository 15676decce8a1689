"""Conversation orchestrator: user turn -> optional web search -> model call -> assistant turn."""

from __future__ import annotations

import logging
import random
import re
import threading
from typing import Any, Dict, List, Optional, Sequence

import config
from errors import Busy, LLMError, NoActiveConversation
from response import ChatMessage, LLMGateway
from search import WebSearcher, WebSearchResult
from state import ConversationStore, Message, make_message

logger = logging.getLogger("deepchat.chat")

DEFAULT_PERSONA = (
    "You are DeepChat, a quick-witted and loyal assistant. Keep answers short, "
    "skip the filler, and use the web search results below when they are "
    "relevant, citing the source URL."
)

APOLOGIES = (
    "Oof. That didn't work. Even I have my limits. 😒",
    "Well, that crashed harder than my hopes for a quiet day. Try again?",
    "Houston, we have a problem. And by Houston, I mean your request just failed.",
    "Error? More like 'err-are you kidding me?' Let's try that again.",
    "That went about as well as a screen door on a submarine. Retry?",
)

_RE_SEARCH_TRIGGER = re.compile(
    r"\b(search|find|look up|recipes?|how to|what is|who is|where is|when is)\b",
    re.IGNORECASE,
)


def needs_web_search(text: str) -> bool:
    """Heuristic: does *text* read like a lookup question?"""
    return bool(_RE_SEARCH_TRIGGER.search(text))


def format_search_results(results: Sequence[WebSearchResult]) -> str:
    """Render results as the block appended to the persona message."""
    if not results:
        return ""
    lines = [f"{i}. {r.title}\n   {r.snippet}\n   Source: {r.url}" for i, r in enumerate(results, 1)]
    return "\n\n## Web Search Results\nI found these sources for you:\n" + "\n\n".join(lines)


def to_chat_message(msg: Message) -> ChatMessage:
    """Map a stored Message to gateway input (text, or text + image parts)."""
    if msg.images:
        parts: List[Dict[str, Any]] = [{"type": "text", "text": msg.content}]
        parts.extend({"type": "image", "image": img} for img in msg.images)
        return {"role": msg.role, "content": parts}
    return {"role": msg.role, "content": msg.content}


class ChatOrchestrator:
    """Drive one send: append user turn, search, call the model, append the reply.

    One send runs at a time; a concurrent send raises Busy.
    """

    def __init__(self, store: ConversationStore, gateway: LLMGateway, searcher: WebSearcher,
                 persona: str | None = None, *, web_search: bool = True,
                 num_search_results: int = 10, rng: random.Random | None = None):
        self.store = store
        self.gateway = gateway
        self.searcher = searcher
        self.persona = persona or DEFAULT_PERSONA
        self.web_search = web_search
        self.num_search_results = num_search_results
        self.rng = rng or random.Random()
        self.is_loading = False
        self._send_lock = threading.Lock()

    def _build_outbound(self, history: Sequence[Message],
                        results: Sequence[WebSearchResult]) -> List[ChatMessage]:
        role = "system" if self.gateway.accepts_system_role() else "user"
        persona = {"role": role, "content": self.persona + format_search_results(results)}
        return [persona] + [to_chat_message(m) for m in history]

    def send_message(self, text: str, images: Sequence[str] | None = None) -> Message:
        """Send *text* in the current conversation; returns the appended assistant turn.

        Provider failures become an apology turn rather than an exception.
        Raises Busy without touching history when another send is in flight.
        """
        if not self._send_lock.acquire(blocking=False):
            raise Busy("A message is already being sent")
        try:
            return self._send_locked(text, images)
        finally:
            self._send_lock.release()

    def _send_locked(self, text: str, images: Sequence[str] | None) -> Message:
        conversation = self.store.current()
        if conversation is None:
            raise NoActiveConversation("No conversation selected")
        cid = conversation.id

        self.is_loading = True
        try:
            user_msg = make_message("user", text, images=images)
            self.store.append(cid, user_msg)

            results: List[WebSearchResult] = []
            if self.web_search and needs_web_search(text):
                logger.info("Performing web search for: %s", text)
                results = self.searcher.search(text, self.num_search_results)

            outbound = self._build_outbound(conversation.messages + [user_msg], results)
            if config.DEBUG_MODE:
                logger.debug("Outbound conversation: %d messages", len(outbound))
            try:
                response = self.gateway.send_chat_message(outbound)
            except LLMError as exc:
                logger.error("Failed to send message: %s", exc)
                apology = self.rng.choice(APOLOGIES)
                reply = make_message("assistant", f"{apology}\n\n*Technical details: {exc}*")
            else:
                reply = make_message("assistant", response.content, web_search_results=results or None)
            self.store.append(cid, reply)
            return reply
        finally:
            self.is_loading = False

    def retry_message(self, message_id: str) -> Message:
        """Re-send the user turn *message_id* (or the one before an assistant turn).

        New turns are appended; existing history is left as is.
        """
        if self._send_lock.locked():
            raise Busy("A message is already being sent")
        conversation = self.store.current()
        if conversation is None:
            raise NoActiveConversation("No conversation selected")
        messages = conversation.messages
        index: Optional[int] = next(
            (i for i, m in enumerate(messages) if m.id == message_id), None)
        if index is None:
            raise KeyError(f"Unknown message: {message_id}")
        while index >= 0 and messages[index].role != "user":
            index -= 1
        if index < 0:
            raise KeyError(f"No user message precedes {message_id}")
        source = messages[index]
        logger.info("Retrying message %s", source.id)
        return self.send_message(source.content, source.images)
