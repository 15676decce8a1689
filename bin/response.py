"""DeepChat LLM gateway: session selection, wire-format translators, model discovery.

Response generation and provider coordination:
  - LLMSession: the persisted (active_provider, selected_model) pair
  - Wire-format translators (OpenAI-compatible, Anthropic, Gemini, hosted, local)
  - LLMGateway.send_chat_message: one request, one normalized LLMResponse
  - LLMGateway.list_models: live model discovery with static fallback
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

import config
from config import HOSTED_PROVIDER, PROVIDERS, ProviderDescriptor, WireFormat, ollama_host
from credentials import CredentialStore
from errors import LLMError, MissingCredential, StorageError, UnknownProvider
from storage import KeyValueStore

logger = logging.getLogger("deepchat.response")

SETTINGS_KEY = "deepchat_llm_settings"
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 4096
OPENROUTER_HEADERS = {"HTTP-Referer": "https://deepchat.app", "X-Title": "DeepChat"}

# A ChatMessage is {"role": "system"|"user"|"assistant", "content": str | [part, ...]}
# where a part is {"type": "text", "text": ...} or {"type": "image", "image": <data URI>}.
ChatMessage = Dict[str, Any]
LocalRunner = Callable[[List[ChatMessage], str], str]


# ---------------------------------------------------------------------------
# Response data model
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass(frozen=True)
class LLMResponse:
    """Normalized provider reply."""

    content: str
    model: str
    usage: Optional[TokenUsage] = None


# ---------------------------------------------------------------------------
# Session selection
# ---------------------------------------------------------------------------
class LLMSession:
    """Active provider and model, persisted as JSON under ``deepchat_llm_settings``.

    Switching provider resets the model to that provider's first model.
    """

    def __init__(self, kv: KeyValueStore, providers: Dict[str, ProviderDescriptor] | None = None):
        self._kv = kv
        self._providers = providers if providers is not None else PROVIDERS
        self.active_provider = HOSTED_PROVIDER
        self.selected_model = self._first_model(HOSTED_PROVIDER)
        self._discovered: Dict[str, tuple] = {}

    def _first_model(self, provider_id: str) -> str:
        desc = self._providers.get(provider_id)
        return desc.models[0] if desc and desc.models else ""

    def load(self) -> None:
        """Restore the persisted selection; unreadable or stale data keeps defaults."""
        try:
            raw = self._kv.get(SETTINGS_KEY)
        except StorageError as exc:
            logger.error("Failed to load LLM settings: %s", exc)
            return
        if not raw:
            return
        try:
            data = json.loads(raw)
            provider = data["activeProvider"]
            model = data.get("selectedModel") or self._first_model(provider)
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.error("Ignoring corrupt LLM settings: %s", exc)
            return
        if provider not in self._providers:
            logger.warning("Stored provider %r no longer registered; using defaults", provider)
            return
        self.active_provider = provider
        self.selected_model = model

    def save(self) -> None:
        payload = {"activeProvider": self.active_provider, "selectedModel": self.selected_model}
        try:
            self._kv.set(SETTINGS_KEY, json.dumps(payload))
        except StorageError as exc:
            logger.error("Failed to save LLM settings: %s", exc)

    def set_active_provider(self, provider_id: str) -> None:
        if provider_id not in self._providers:
            raise UnknownProvider(provider_id)
        self.active_provider = provider_id
        self.selected_model = self._first_model(provider_id)
        self.save()

    def remember_models(self, provider_id: str, models: List[str]) -> None:
        """Record the live model ids discovered for *provider_id*."""
        self._discovered[provider_id] = tuple(models)

    def available_models(self, provider_id: str | None = None) -> tuple:
        """Static models of *provider_id* (default: active) plus any discovered ones."""
        pid = provider_id or self.active_provider
        desc = self._providers.get(pid)
        static = desc.models if desc else ()
        return static + tuple(m for m in self._discovered.get(pid, ()) if m not in static)

    def set_selected_model(self, model_id: str) -> None:
        """Select *model_id*; it must be a static or discovered model of the active provider."""
        if model_id not in self.available_models():
            raise ValueError(f"Model {model_id!r} is not available for {self.active_provider}")
        self.selected_model = model_id
        self.save()

    def accepts_system_role(self) -> bool:
        """False for the hosted gateway, which discards system messages."""
        desc = self._providers.get(self.active_provider)
        return not (desc and desc.wire_format is WireFormat.HOSTED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active_provider": self.active_provider,
            "selected_model": self.selected_model,
            "accepts_system_role": self.accepts_system_role(),
        }


# ---------------------------------------------------------------------------
# Content helpers
# ---------------------------------------------------------------------------
def _content_parts(content: Any) -> List[Dict[str, Any]]:
    """Normalize ChatMessage content to a list of tagged parts."""
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content or [])


def _content_text(content: Any) -> str:
    """Concatenate the text parts of *content*."""
    if isinstance(content, str):
        return content
    return "\n".join(p.get("text", "") for p in content or [] if p.get("type") == "text")


def _split_data_uri(image: str) -> tuple[str, str]:
    """Return (media_type, base64 payload) for a data URI or bare base64 string."""
    if image.startswith("data:") and "," in image:
        header, data = image.split(",", 1)
        media_type = header[5:].split(";", 1)[0] or "image/jpeg"
        return media_type, data
    return "image/jpeg", image


def _check_status(provider: str, resp: requests.Response) -> None:
    if not 200 <= resp.status_code < 300:
        raise LLMError(provider, resp.text or f"HTTP {resp.status_code}")


def _debug_dump(label: str, url: str, items: List[Any]) -> None:
    if not config.DEBUG_MODE:
        return
    logger.debug("%s -> %s (%d messages)", label, url, len(items))
    for i, m in enumerate(items):
        text = json.dumps(m, ensure_ascii=False)
        logger.debug("  [%d] %s%s", i, text[:200], "..." if len(text) > 200 else "")


@dataclass
class _Call:
    """Everything a translator needs for one request."""

    descriptor: ProviderDescriptor
    model: str
    api_key: str
    http: Any
    timeout_s: float
    local_runner: Optional[LocalRunner] = None


# ---------------------------------------------------------------------------
# OpenAI-compatible adapter
# ---------------------------------------------------------------------------
def to_openai_messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    """Convert ChatMessages to OpenAI chat/completions messages."""
    out = []
    for msg in messages:
        content = msg["content"]
        if isinstance(content, str):
            out.append({"role": msg["role"], "content": content})
            continue
        parts = []
        for part in content:
            if part.get("type") == "image":
                parts.append({"type": "image_url", "image_url": {"url": part["image"]}})
            else:
                parts.append({"type": "text", "text": part.get("text", "")})
        out.append({"role": msg["role"], "content": parts})
    return out


def _call_openai(call: _Call, messages: List[ChatMessage]) -> LLMResponse:
    """POST {base}/chat/completions and read choices[0].message.content."""
    desc = call.descriptor
    url = f"{desc.base_url}/chat/completions"
    payload = {"model": call.model, "messages": to_openai_messages(messages)}
    headers = {"Content-Type": "application/json"}
    if call.api_key:
        headers["Authorization"] = f"Bearer {call.api_key}"
    if desc.id == "openrouter":
        headers.update(OPENROUTER_HEADERS)
    _debug_dump(desc.name, url, payload["messages"])

    resp = call.http.post(url, json=payload, headers=headers, timeout=call.timeout_s)
    _check_status(desc.name, resp)
    data = resp.json()
    content = data["choices"][0]["message"]["content"]
    usage = None
    raw_usage = data.get("usage")
    if raw_usage:
        prompt = int(raw_usage.get("prompt_tokens", 0))
        completion = int(raw_usage.get("completion_tokens", 0))
        total = raw_usage.get("total_tokens")
        usage = TokenUsage(prompt, completion, int(total) if total is not None else prompt + completion)
    return LLMResponse(content=content or "", model=data.get("model") or call.model, usage=usage)


# ---------------------------------------------------------------------------
# Anthropic adapter
# ---------------------------------------------------------------------------
def to_anthropic_payload(messages: List[ChatMessage], model: str,
                         max_tokens: int = ANTHROPIC_MAX_TOKENS) -> Dict[str, Any]:
    """Build a Messages API payload.

    System messages are lifted into the top-level ``system`` field,
    consecutive same-role turns are merged, and image parts become base64
    ``source`` blocks.
    """
    system_texts = []
    cleaned: List[Dict[str, Any]] = []
    for msg in messages:
        if msg["role"] == "system":
            text = _content_text(msg["content"])
            if text:
                system_texts.append(text)
            continue
        blocks = []
        for part in _content_parts(msg["content"]):
            if part.get("type") == "image":
                media_type, data = _split_data_uri(part["image"])
                blocks.append({"type": "image",
                               "source": {"type": "base64", "media_type": media_type, "data": data}})
            else:
                blocks.append({"type": "text", "text": part.get("text", "")})
        if cleaned and cleaned[-1]["role"] == msg["role"]:
            cleaned[-1]["content"].extend(blocks)
        else:
            cleaned.append({"role": msg["role"], "content": blocks})

    # Collapse text-only turns back to plain strings
    for msg in cleaned:
        if all(b["type"] == "text" for b in msg["content"]):
            msg["content"] = "\n".join(b["text"] for b in msg["content"])

    payload: Dict[str, Any] = {"model": model, "messages": cleaned, "max_tokens": max_tokens}
    if system_texts:
        payload["system"] = "\n\n".join(system_texts)
    return payload


def _call_anthropic(call: _Call, messages: List[ChatMessage]) -> LLMResponse:
    desc = call.descriptor
    url = f"{desc.base_url}/messages"
    payload = to_anthropic_payload(messages, call.model)
    headers = {
        "Content-Type": "application/json",
        "x-api-key": call.api_key,
        "anthropic-version": ANTHROPIC_VERSION,
    }
    _debug_dump(desc.name, url, payload["messages"])

    resp = call.http.post(url, json=payload, headers=headers, timeout=call.timeout_s)
    _check_status(desc.name, resp)
    data = resp.json()
    content = data["content"][0]["text"]
    usage = None
    raw_usage = data.get("usage")
    if raw_usage:
        prompt = int(raw_usage.get("input_tokens", 0))
        completion = int(raw_usage.get("output_tokens", 0))
        usage = TokenUsage(prompt, completion, prompt + completion)
    return LLMResponse(content=content, model=data.get("model") or call.model, usage=usage)


# ---------------------------------------------------------------------------
# Gemini adapter (Google Generative Language API)
# ---------------------------------------------------------------------------
def to_gemini_payload(messages: List[ChatMessage]) -> Dict[str, Any]:
    """Convert ChatMessages to a generateContent payload.

    Gemini uses contents -> parts, with roles ``user`` and ``model``.
    System text goes in a separate ``system_instruction`` field.
    """
    system_texts = []
    contents = []
    for msg in messages:
        if msg["role"] == "system":
            system_texts.append(_content_text(msg["content"]))
            continue
        parts = []
        for part in _content_parts(msg["content"]):
            if part.get("type") == "image":
                media_type, data = _split_data_uri(part["image"])
                parts.append({"inline_data": {"mime_type": media_type, "data": data}})
            else:
                parts.append({"text": part.get("text", "")})
        role = "model" if msg["role"] == "assistant" else "user"
        contents.append({"role": role, "parts": parts})

    payload: Dict[str, Any] = {"contents": contents}
    if any(system_texts):
        payload["system_instruction"] = {"parts": [{"text": "\n\n".join(t for t in system_texts if t)}]}
    return payload


def _call_gemini(call: _Call, messages: List[ChatMessage]) -> LLMResponse:
    desc = call.descriptor
    url = f"{desc.base_url}/models/{call.model}:generateContent"
    payload = to_gemini_payload(messages)
    headers = {"Content-Type": "application/json", "x-goog-api-key": call.api_key}
    _debug_dump(desc.name, url, payload["contents"])

    resp = call.http.post(url, json=payload, headers=headers, timeout=call.timeout_s)
    _check_status(desc.name, resp)
    data = resp.json()
    parts = data["candidates"][0]["content"]["parts"]
    content = "".join(p.get("text", "") for p in parts)
    usage = None
    meta = data.get("usageMetadata")
    if meta:
        prompt = int(meta.get("promptTokenCount", 0))
        completion = int(meta.get("candidatesTokenCount", 0))
        usage = TokenUsage(prompt, completion, int(meta.get("totalTokenCount", prompt + completion)))
    return LLMResponse(content=content, model=data.get("modelVersion") or call.model, usage=usage)


# ---------------------------------------------------------------------------
# Hosted gateway adapter
# ---------------------------------------------------------------------------
def to_hosted_messages(messages: List[ChatMessage]) -> List[Dict[str, Any]]:
    """Drop system messages; keep text and image parts as tagged parts."""
    out = []
    for msg in messages:
        if msg["role"] == "system":
            continue
        content = msg["content"]
        if isinstance(content, str):
            out.append({"role": msg["role"], "content": content})
            continue
        parts = []
        for part in content:
            if part.get("type") == "image":
                parts.append({"type": "image", "image": part["image"]})
            else:
                parts.append({"type": "text", "text": part.get("text", "")})
        out.append({"role": msg["role"], "content": parts})
    return out


def _call_hosted(call: _Call, messages: List[ChatMessage]) -> LLMResponse:
    """POST {"messages": [...]} to the gateway; the body is the reply text."""
    desc = call.descriptor
    payload = {"messages": to_hosted_messages(messages)}
    _debug_dump(desc.name, desc.base_url, payload["messages"])

    resp = call.http.post(desc.base_url, json=payload,
                          headers={"Content-Type": "application/json"}, timeout=call.timeout_s)
    _check_status(desc.name, resp)
    return LLMResponse(content=resp.text, model=call.model, usage=None)


# ---------------------------------------------------------------------------
# Local (on-device) adapter
# ---------------------------------------------------------------------------
def _call_local(call: _Call, messages: List[ChatMessage]) -> LLMResponse:
    if call.local_runner is None:
        raise LLMError(call.descriptor.name, "No on-device model runner is registered")
    try:
        text = call.local_runner(messages, call.model)
    except Exception as exc:
        raise LLMError(call.descriptor.name, str(exc) or type(exc).__name__) from exc
    return LLMResponse(content=text, model=call.model, usage=None)


_TRANSLATORS: Dict[WireFormat, Callable[[_Call, List[ChatMessage]], LLMResponse]] = {
    WireFormat.OPENAI: _call_openai,
    WireFormat.ANTHROPIC: _call_anthropic,
    WireFormat.GEMINI: _call_gemini,
    WireFormat.HOSTED: _call_hosted,
    WireFormat.LOCAL: _call_local,
}


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------
class LLMGateway:
    """Route ChatMessages to the active provider and normalize the reply."""

    def __init__(self, session: LLMSession, credentials: CredentialStore, *,
                 http: Any = requests, timeout_s: float = 120.0,
                 local_runner: Optional[LocalRunner] = None,
                 providers: Dict[str, ProviderDescriptor] | None = None):
        self.session = session
        self.credentials = credentials
        self.http = http
        self.timeout_s = timeout_s
        self.local_runner = local_runner
        self._providers = providers if providers is not None else PROVIDERS

    def accepts_system_role(self) -> bool:
        return self.session.accepts_system_role()

    def _resolve(self, provider_id: str) -> tuple[ProviderDescriptor, str]:
        """Return (descriptor, api_key); configuration errors are raised here."""
        desc = self._providers.get(provider_id)
        if desc is None:
            raise UnknownProvider(provider_id)
        api_key = self.credentials.get(provider_id) or ""
        if desc.requires_api_key and not api_key:
            raise MissingCredential(provider_id, desc.name)
        return desc, api_key

    def send_chat_message(self, messages: List[ChatMessage],
                          model_override: str | None = None) -> LLMResponse:
        """Send *messages* to the active provider; raises LLMError on any failure."""
        provider_id = self.session.active_provider
        model = model_override or self.session.selected_model
        desc, api_key = self._resolve(provider_id)

        if desc.wire_format is None:
            raise LLMError(desc.name, f"Provider {provider_id} not yet implemented")
        translator = _TRANSLATORS[desc.wire_format]
        call = _Call(descriptor=desc, model=model, api_key=api_key, http=self.http,
                     timeout_s=self.timeout_s, local_runner=self.local_runner)

        logger.info("Sending %d messages to %s (model=%s)", len(messages), provider_id, model)
        try:
            result = translator(call, messages)
        except LLMError:
            raise
        except requests.RequestException as exc:
            raise LLMError(desc.name, str(exc)) from exc
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise LLMError(desc.name, f"Malformed response: {exc!r}") from exc
        except Exception as exc:
            # Nothing below the gateway escapes as anything but LLMError
            logger.exception("Unexpected %s failure", provider_id)
            raise LLMError(desc.name, str(exc) or type(exc).__name__) from exc

        if result.usage:
            logger.debug("%s usage: %s", provider_id, result.usage)
        return result

    # -----------------------------------------------------------------------
    # Model discovery
    # -----------------------------------------------------------------------
    def list_models(self, provider_id: str) -> List[str]:
        """Live model ids for *provider_id*, falling back to the static list."""
        desc = self._providers.get(provider_id)
        if desc is None:
            raise UnknownProvider(provider_id)
        static = list(desc.models)
        api_key = self.credentials.get(provider_id) or ""
        if desc.requires_api_key and not api_key:
            return static

        try:
            if provider_id == "ollama":
                resp = self.http.get(f"{ollama_host()}/api/tags", timeout=self.timeout_s)
                _check_status(desc.name, resp)
                ids = sorted(m["name"] for m in resp.json()["models"])
                self.session.remember_models(provider_id, ids)
                return ids
            if provider_id in ("openai", "openrouter", "groq"):
                resp = self.http.get(f"{desc.base_url}/models", timeout=self.timeout_s,
                                     headers={"Authorization": f"Bearer {api_key}"})
                _check_status(desc.name, resp)
                ids = [m["id"] for m in resp.json()["data"]]
                if provider_id == "openai":
                    ids = [i for i in ids if "gpt" in i]
                ids = sorted(ids)
                self.session.remember_models(provider_id, ids)
                return ids or static
        except (LLMError, requests.RequestException, ValueError, KeyError, TypeError) as exc:
            logger.warning("Model discovery failed for %s: %s", provider_id, exc)
        return static
