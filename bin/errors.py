"""DeepChat error taxonomy.

Foundational module shared by every other module:
  - StorageError           persistence backend failures
  - LLMError               anything that prevents a provider reply
      UnknownProvider      provider id not in the registry
      MissingCredential    provider requires a key and none is stored
  - NoActiveConversation   send attempted with no current conversation

Dependency: stdlib only.
"""

from __future__ import annotations


class DeepChatError(Exception):
    """Base class for all DeepChat errors."""


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
class StorageError(DeepChatError):
    """Raised when a key-value or secret store cannot read or write."""


# ---------------------------------------------------------------------------
# Provider calls
# ---------------------------------------------------------------------------
class LLMError(DeepChatError):
    """A provider call failed; carries the provider name and raw error text."""

    def __init__(self, provider: str, detail: str):
        self.provider = provider
        self.detail = detail
        super().__init__(f"{provider} API error: {detail}")


class UnknownProvider(LLMError):
    """Provider id is not present in the registry."""

    def __init__(self, provider: str):
        self.provider = provider
        self.detail = f"Unknown provider: {provider}"
        DeepChatError.__init__(self, self.detail)


class MissingCredential(LLMError):
    """Provider requires an API key and none has been stored."""

    def __init__(self, provider: str, display_name: str = ""):
        self.provider = provider
        self.detail = (f"API key required for {display_name or provider}. "
                       f"Please add it in settings.")
        DeepChatError.__init__(self, self.detail)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------
class NoActiveConversation(DeepChatError):
    """send_message was called with no conversation selected."""


class Busy(DeepChatError):
    """A send is already in flight for this session."""
