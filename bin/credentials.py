"""Provider-keyed API key storage with an in-memory mirror."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from config import PROVIDERS
from errors import StorageError
from storage import KeyValueStore

logger = logging.getLogger("deepchat.credentials")

API_KEY_PREFIX = "deepchat_api_key_"


class CredentialStore:
    """Secure-store-backed API keys, mirrored in memory for request-time lookups.

    Writes go to the secure store first and only then to the mirror, so a
    failed write never leaves the two disagreeing.
    """

    def __init__(self, secure_store: KeyValueStore, provider_ids: Iterable[str] | None = None):
        self._secure = secure_store
        self._provider_ids = list(provider_ids) if provider_ids is not None else list(PROVIDERS)
        self._mirror: Dict[str, Optional[str]] = {pid: None for pid in self._provider_ids}

    @staticmethod
    def _storage_key(provider_id: str) -> str:
        return f"{API_KEY_PREFIX}{provider_id}"

    def _check_known(self, provider_id: str) -> None:
        if provider_id not in self._mirror:
            raise KeyError(f"Unknown provider: {provider_id}")

    def load_all(self) -> None:
        """Populate the mirror from the secure store for every known provider."""
        for pid in self._provider_ids:
            try:
                self._mirror[pid] = self._secure.get(self._storage_key(pid)) or None
            except StorageError as exc:
                logger.error("Failed to load API key for %s: %s", pid, exc)
                self._mirror[pid] = None
        logger.info("Loaded API keys for providers: %s",
                    ", ".join(self.configured_providers()) or "(none)")

    def get(self, provider_id: str) -> Optional[str]:
        return self._mirror.get(provider_id)

    def has(self, provider_id: str) -> bool:
        return bool(self._mirror.get(provider_id))

    def set(self, provider_id: str, secret: str) -> None:
        """Persist *secret* for *provider_id*; raises StorageError on failure."""
        self._check_known(provider_id)
        if not secret or not secret.strip():
            raise ValueError("API key must be non-empty; use remove() to clear it")
        self._secure.set(self._storage_key(provider_id), secret)
        self._mirror[provider_id] = secret
        logger.info("API key saved for provider: %s", provider_id)

    def remove(self, provider_id: str) -> None:
        """Delete the stored key for *provider_id*; raises StorageError on failure."""
        self._check_known(provider_id)
        self._secure.delete(self._storage_key(provider_id))
        self._mirror[provider_id] = None
        logger.info("API key removed for provider: %s", provider_id)

    def configured_providers(self) -> list[str]:
        return [pid for pid in self._provider_ids if self.has(pid)]
