"""DeepChat configuration: config.yaml loading, provider registry, CLI args."""

from __future__ import annotations

import argparse
import enum
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger("deepchat.config")


# ---------------------------------------------------------------------------
# Configuration dataclass
# ---------------------------------------------------------------------------
@dataclass
class Config:
    """Runtime configuration for the chat core and its local shim."""

    data_dir: Path  # Root for the durable KV store and the encrypted secret store.
    timeout_s: float = 120.0  # Network timeout for provider and search requests.
    bind_host: str = "127.0.0.1"  # Loopback only; the shim is a local UI adapter.
    bind_port: int = 8890
    google_api_key: str = ""  # Google Custom Search credentials (search augmentation).
    google_search_engine_id: str = ""
    allowed_origins: set = field(default_factory=lambda: {
        "http://127.0.0.1:8890", "http://localhost:8890"
    })

    @property
    def storage_dir(self) -> Path:
        return self.data_dir / "store"

    @property
    def secrets_dir(self) -> Path:
        return self.data_dir / "secrets"

    @property
    def secret_key_file(self) -> Path:
        return self.data_dir / "secret.key"


def load_config() -> Config:
    """Build Config from environment variables with safe defaults."""
    data_dir = Path(
        os.environ.get("DEEPCHAT_DATA_DIR", str(Path.home() / ".deepchat"))
    ).expanduser().resolve()

    port = int(os.environ.get("DEEPCHAT_BIND_PORT", "8890"))
    allowed_origins_raw = os.environ.get(
        "DEEPCHAT_ALLOWED_ORIGINS",
        f"http://127.0.0.1:{port},http://localhost:{port}",
    )
    allowed_origins = {v.strip() for v in allowed_origins_raw.split(",") if v.strip()}

    return Config(
        data_dir=data_dir,
        timeout_s=float(os.environ.get("DEEPCHAT_TIMEOUT_S", "120")),
        bind_host=os.environ.get("DEEPCHAT_BIND_HOST", "127.0.0.1"),
        bind_port=port,
        google_api_key=os.environ.get("GOOGLE_API_KEY", ""),
        google_search_engine_id=os.environ.get("GOOGLE_SEARCH_ENGINE_ID", ""),
        allowed_origins=allowed_origins,
    )


# ---------------------------------------------------------------------------
# config.yaml loader
# ---------------------------------------------------------------------------
_CONFIG_YAML_STATUS = ""  # human-readable load status for startup banner


def _load_config_yaml(project_root: Path | None = None) -> Dict[str, Any]:
    """Load config.yaml from DEEPCHAT_CONFIG or the project directory.

    *project_root* defaults to the parent of the bin/ directory (i.e. the
    repo root).
    """
    global _CONFIG_YAML_STATUS
    explicit = os.environ.get("DEEPCHAT_CONFIG")
    if explicit:
        cfg_path = Path(explicit).expanduser()
    else:
        if project_root is None:
            project_root = Path(__file__).resolve().parent.parent
        cfg_path = project_root / "config.yaml"
    if not cfg_path.exists():
        _CONFIG_YAML_STATUS = f"not found at {cfg_path}"
        return {}
    try:
        with open(cfg_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        _CONFIG_YAML_STATUS = f"parse error: {exc}"
        logger.warning("config.yaml unreadable at %s: %s", cfg_path, exc)
        return {}
    if not isinstance(data, dict):
        _CONFIG_YAML_STATUS = f"not a mapping at {cfg_path}"
        return {}
    _CONFIG_YAML_STATUS = f"loaded ({len(data)} keys) from {cfg_path}"
    return data


_CONFIG_YAML: Dict[str, Any] = _load_config_yaml()


# ---------------------------------------------------------------------------
# Provider registry
# ---------------------------------------------------------------------------
class WireFormat(enum.Enum):
    """Request/response family a provider speaks."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    HOSTED = "hosted"
    LOCAL = "local"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static connection metadata for one LLM provider."""

    id: str
    name: str
    requires_api_key: bool
    base_url: str
    models: tuple
    docs_url: str
    wire_format: Optional[WireFormat]  # None: registered but no translator yet.


HOSTED_PROVIDER = "rork"
LOCAL_PROVIDER = "local"

_DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "openai": {
        "name": "OpenAI",
        "base_url": "https://api.openai.com/v1",
        "docs_url": "https://platform.openai.com/api-keys",
        "models": ["gpt-4o", "gpt-4o-mini", "gpt-4-turbo", "gpt-3.5-turbo"],
        "wire_format": WireFormat.OPENAI,
    },
    "anthropic": {
        "name": "Anthropic",
        "base_url": "https://api.anthropic.com/v1",
        "docs_url": "https://console.anthropic.com/settings/keys",
        "models": [
            "claude-3-5-sonnet-20241022",
            "claude-3-5-haiku-20241022",
            "claude-3-opus-20240229",
            "claude-3-sonnet-20240229",
            "claude-3-haiku-20240307",
        ],
        "wire_format": WireFormat.ANTHROPIC,
    },
    "google": {
        "name": "Google Gemini",
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "docs_url": "https://aistudio.google.com/app/apikey",
        "models": ["gemini-2.0-flash-exp", "gemini-1.5-pro", "gemini-1.5-flash"],
        "wire_format": WireFormat.GEMINI,
    },
    "openrouter": {
        "name": "OpenRouter",
        "base_url": "https://openrouter.ai/api/v1",
        "docs_url": "https://openrouter.ai/keys",
        "models": ["openai/gpt-4o", "anthropic/claude-3.5-sonnet", "meta-llama/llama-3.1-70b-instruct"],
        "wire_format": WireFormat.OPENAI,
    },
    "mistral": {
        "name": "Mistral AI",
        "base_url": "https://api.mistral.ai/v1",
        "docs_url": "https://console.mistral.ai/api-keys",
        "models": ["mistral-large-latest", "mistral-medium-latest", "mistral-small-latest",
                   "open-mistral-7b", "open-mixtral-8x7b", "open-mixtral-8x22b"],
        "wire_format": WireFormat.OPENAI,
    },
    "deepseek": {
        "name": "DeepSeek",
        "base_url": "https://api.deepseek.com/v1",
        "docs_url": "https://platform.deepseek.com/api_keys",
        "models": ["deepseek-chat", "deepseek-coder"],
        "wire_format": WireFormat.OPENAI,
    },
    "groq": {
        "name": "Groq",
        "base_url": "https://api.groq.com/openai/v1",
        "docs_url": "https://console.groq.com/keys",
        "models": ["llama-3.1-70b-versatile", "llama-3.1-8b-instant", "mixtral-8x7b-32768"],
        "wire_format": WireFormat.OPENAI,
    },
    "together": {
        "name": "Together AI",
        "base_url": "https://api.together.xyz/v1",
        "docs_url": "https://api.together.xyz/settings/api-keys",
        "models": ["meta-llama/Llama-3-70b-chat-hf", "meta-llama/Llama-3-8b-chat-hf",
                   "mistralai/Mixtral-8x7B-Instruct-v0.1", "mistralai/Mistral-7B-Instruct-v0.2"],
        "wire_format": WireFormat.OPENAI,
    },
    "perplexity": {
        "name": "Perplexity",
        "base_url": "https://api.perplexity.ai",
        "docs_url": "https://www.perplexity.ai/settings/api",
        "models": ["llama-3.1-sonar-large-128k-online", "llama-3.1-sonar-small-128k-online",
                   "llama-3.1-sonar-large-128k-chat", "llama-3.1-sonar-small-128k-chat"],
        "wire_format": WireFormat.OPENAI,
    },
    "cohere": {
        "name": "Cohere",
        "base_url": "https://api.cohere.ai/v1",
        "docs_url": "https://dashboard.cohere.com/api-keys",
        "models": ["command-r-plus", "command-r", "command", "command-light"],
        "wire_format": None,
    },
    HOSTED_PROVIDER: {
        "name": "DeepChat (default)",
        "requires_api_key": False,
        "base_url": "",  # filled from DEEPCHAT_GATEWAY_URL
        "docs_url": "https://deepchat.app",
        "models": ["gpt-4o"],
        "wire_format": WireFormat.HOSTED,
    },
    "ollama": {
        "name": "Ollama",
        "requires_api_key": False,
        "base_url": "",  # filled from OLLAMA_HOST
        "docs_url": "https://ollama.com/library",
        "models": ["llama3.2", "mistral", "qwen2.5"],
        "wire_format": WireFormat.OPENAI,
    },
    LOCAL_PROVIDER: {
        "name": "On-device",
        "requires_api_key": False,
        "base_url": "",
        "docs_url": "",
        "models": ["local-default"],
        "wire_format": WireFormat.LOCAL,
    },
}


def ollama_host() -> str:
    """Base URL of the Ollama daemon (without the /v1 suffix)."""
    return os.environ.get("OLLAMA_HOST", "http://localhost:11434").rstrip("/")


def _build_providers(cfg_yaml: Dict[str, Any] | None = None) -> Dict[str, ProviderDescriptor]:
    """Construct the provider registry from defaults + config.yaml overrides."""
    if cfg_yaml is None:
        cfg_yaml = _CONFIG_YAML
    yaml_providers = cfg_yaml.get("providers", {}) if isinstance(cfg_yaml, dict) else {}
    if not isinstance(yaml_providers, dict):
        yaml_providers = {}

    registry: Dict[str, ProviderDescriptor] = {}
    for pid, defaults in _DEFAULT_PROVIDERS.items():
        pcfg = dict(defaults)
        if pid == HOSTED_PROVIDER:
            pcfg["base_url"] = os.environ.get(
                "DEEPCHAT_GATEWAY_URL", "https://toolkit.rork.com/text/llm/")
        elif pid == "ollama":
            pcfg["base_url"] = ollama_host() + "/v1"

        # YAML overrides defaults; env vars above still win for URLs
        ycfg = yaml_providers.get(pid)
        if isinstance(ycfg, dict):
            if ycfg.get("name"):
                pcfg["name"] = ycfg["name"]
            if ycfg.get("base_url") and pid not in (HOSTED_PROVIDER,):
                pcfg["base_url"] = str(ycfg["base_url"]).rstrip("/")
            if isinstance(ycfg.get("models"), list) and ycfg["models"]:
                pcfg["models"] = [str(m) for m in ycfg["models"]]

        registry[pid] = ProviderDescriptor(
            id=pid,
            name=pcfg["name"],
            requires_api_key=pcfg.get("requires_api_key", True),
            base_url=pcfg["base_url"],
            models=tuple(pcfg["models"]),
            docs_url=pcfg["docs_url"],
            wire_format=pcfg["wire_format"],
        )
    return registry


PROVIDERS: Dict[str, ProviderDescriptor] = _build_providers()


def lookup_provider(provider_id: str) -> ProviderDescriptor | None:
    """Return the descriptor for *provider_id*, or None when unknown."""
    return PROVIDERS.get(provider_id)


# ---------------------------------------------------------------------------
# Chat / search settings
# ---------------------------------------------------------------------------
def _derive_chat_settings(cfg_yaml: dict) -> dict:
    """Derive the flat chat/search settings dict from a parsed config.yaml dict."""
    chat = cfg_yaml.get("chat", {}) if isinstance(cfg_yaml, dict) else {}
    search = cfg_yaml.get("search", {}) if isinstance(cfg_yaml, dict) else {}
    if not isinstance(chat, dict):
        chat = {}
    if not isinstance(search, dict):
        search = {}
    return {
        "persona": chat.get("persona") or None,
        "web_search": bool(chat.get("web_search", True)),
        "search_engine": str(search.get("engine", "google")).lower(),
        "search_num_results": int(search.get("num_results", 10)),
    }


# ---------------------------------------------------------------------------
# Module-level mode flags (set by main() at startup)
# ---------------------------------------------------------------------------
DEBUG_MODE: bool = False


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments for the local shim."""
    parser = argparse.ArgumentParser(description="DeepChat local shim")
    parser.add_argument("--debug", action="store_true", help="Enable verbose debug logging")
    parser.add_argument("--data-dir", default="",
                        help="Directory for conversations, settings and encrypted keys")
    parser.add_argument("--port", type=int, default=0, help="Override DEEPCHAT_BIND_PORT")
    return parser.parse_args(argv)
