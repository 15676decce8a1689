#!/usr/bin/env python3
"""DeepChat local shim.

Loopback-only Flask server that exposes the chat core (providers, API keys,
session selection, conversations, send/retry) as JSON endpoints for a UI
layer. Conversations and settings live in a file-backed store under the
data directory; API keys live in a Fernet-encrypted store beside it.

Usage:
    python bin/deepchat.py [--debug] [--data-dir DIR] [--port N]
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

from flask import Flask, request as flask_request, jsonify

# Ensure bin/ is on the path so sibling modules are importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

import config as config_mod
from config import (
    Config,
    PROVIDERS,
    _CONFIG_YAML,
    _CONFIG_YAML_STATUS,
    _derive_chat_settings,
    load_config,
    lookup_provider,
    parse_args,
)
from chat import ChatOrchestrator
from credentials import CredentialStore
from errors import Busy, NoActiveConversation, StorageError, UnknownProvider
from response import LLMGateway, LLMSession
from search import WebSearcher
from state import ConversationStore, sort_for_display
from storage import EncryptedFileStore, FileStore, KeyValueStore, load_or_create_key

logger = logging.getLogger("deepchat")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------
@dataclass
class Services:
    """The wired chat core behind the HTTP surface."""

    credentials: CredentialStore
    session: LLMSession
    gateway: LLMGateway
    searcher: WebSearcher
    store: ConversationStore
    orchestrator: ChatOrchestrator


def build_services(cfg: Config, kv: KeyValueStore | None = None,
                   secure: KeyValueStore | None = None, *, http: Any = None,
                   chat_settings: Dict[str, Any] | None = None) -> Services:
    """Construct and load every component; file-backed stores unless given."""
    if kv is None:
        kv = FileStore(cfg.storage_dir)
    if secure is None:
        secure = EncryptedFileStore(cfg.secrets_dir, load_or_create_key(cfg.secret_key_file))
    settings = chat_settings if chat_settings is not None else _derive_chat_settings(_CONFIG_YAML)
    http_kwargs = {"http": http} if http is not None else {}

    credentials = CredentialStore(secure)
    credentials.load_all()
    session = LLMSession(kv)
    session.load()
    gateway = LLMGateway(session, credentials, timeout_s=cfg.timeout_s, **http_kwargs)
    searcher = WebSearcher(cfg.google_api_key, cfg.google_search_engine_id,
                           engine=settings["search_engine"], timeout_s=cfg.timeout_s, **http_kwargs)
    store = ConversationStore(kv, default_model_id=session.selected_model)
    store.load()
    orchestrator = ChatOrchestrator(
        store, gateway, searcher, settings["persona"],
        web_search=settings["web_search"],
        num_search_results=settings["search_num_results"],
    )
    return Services(credentials, session, gateway, searcher, store, orchestrator)


def _conversation_summary(conv) -> Dict[str, Any]:
    return {
        "id": conv.id,
        "title": conv.title,
        "modelId": conv.model_id,
        "pinned": conv.pinned,
        "createdAt": conv.created_at,
        "updatedAt": conv.updated_at,
        "messageCount": len(conv.messages),
    }


# ---------------------------------------------------------------------------
# Flask app factory
# ---------------------------------------------------------------------------
def create_app(cfg: Config, services: Services | None = None) -> Flask:
    """Create and configure the DeepChat Flask application instance."""
    app = Flask(__name__, static_folder=None)
    svc = services or build_services(cfg)
    app.config["DEEPCHAT_SERVICES"] = svc

    @app.after_request
    def add_security_headers(response):
        """Apply CORS headers for the configured local UI origins."""
        origin = flask_request.headers.get("Origin", "")
        if origin and origin in cfg.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response

    @app.errorhandler(StorageError)
    def storage_failed(exc):
        logger.error("Storage failure: %s", exc)
        return jsonify({"ok": False, "error": str(exc)}), 500

    @app.route("/health", methods=["GET"])
    def health():
        """Simple liveness endpoint for local health checks."""
        return jsonify({"ok": True})

    # -- providers & credentials ----------------------------------------------
    @app.route("/providers", methods=["GET"])
    def providers():
        """Expose non-secret provider metadata for UI model selectors."""
        result = {}
        for pid, desc in PROVIDERS.items():
            result[pid] = {
                "name": desc.name,
                "models": list(desc.models),
                "docs_url": desc.docs_url,
                "needs_key": desc.requires_api_key,
                "has_key": svc.credentials.has(pid),
                "implemented": desc.wire_format is not None,
            }
        return jsonify({"providers": result})

    @app.route("/providers/<provider_id>/key", methods=["PUT", "DELETE"])
    def provider_key(provider_id):
        if lookup_provider(provider_id) is None:
            return jsonify({"ok": False, "error": "unknown_provider"}), 404
        if flask_request.method == "DELETE":
            svc.credentials.remove(provider_id)
            return jsonify({"ok": True, "has_key": False})
        body = flask_request.get_json(force=True, silent=True) or {}
        try:
            svc.credentials.set(provider_id, str(body.get("api_key") or ""))
        except ValueError:
            return jsonify({"ok": False, "error": "missing_api_key"}), 400
        return jsonify({"ok": True, "has_key": True})

    @app.route("/providers/<provider_id>/models", methods=["GET"])
    def provider_models(provider_id):
        try:
            models = svc.gateway.list_models(provider_id)
        except UnknownProvider:
            return jsonify({"ok": False, "error": "unknown_provider"}), 404
        return jsonify({"ok": True, "models": models})

    # -- session selection ------------------------------------------------------
    @app.route("/session", methods=["GET", "POST"])
    def session_endpoint():
        if flask_request.method == "POST":
            body = flask_request.get_json(force=True, silent=True) or {}
            if body.get("provider"):
                try:
                    svc.session.set_active_provider(str(body["provider"]))
                except UnknownProvider:
                    return jsonify({"ok": False, "error": "unknown_provider"}), 404
            if body.get("model"):
                try:
                    svc.session.set_selected_model(str(body["model"]))
                except ValueError:
                    return jsonify({"ok": False, "error": "unknown_model"}), 400
                svc.store.set_default_model(str(body["model"]))
        return jsonify({"ok": True, **svc.session.to_dict()})

    # -- conversations ------------------------------------------------------
    @app.route("/conversations", methods=["GET", "POST"])
    def conversations():
        if flask_request.method == "POST":
            body = flask_request.get_json(force=True, silent=True) or {}
            cid = svc.store.create(body.get("model_id") or None)
            return jsonify({"ok": True, "conversation": svc.store.get(cid).to_dict()}), 201
        ordered = sort_for_display(svc.store.conversations)
        return jsonify({
            "ok": True,
            "current_id": svc.store.current_id,
            "conversations": [_conversation_summary(c) for c in ordered],
        })

    @app.route("/conversations/<conversation_id>", methods=["GET", "PATCH", "DELETE"])
    def conversation(conversation_id):
        if flask_request.method == "DELETE":
            svc.store.delete(conversation_id)
            return jsonify({"ok": True})
        if svc.store.get(conversation_id) is None:
            return jsonify({"ok": False, "error": "unknown_conversation"}), 404
        if flask_request.method == "PATCH":
            body = flask_request.get_json(force=True, silent=True) or {}
            title = str(body.get("title") or "")
            if not title.strip():
                return jsonify({"ok": False, "error": "missing_title"}), 400
            svc.store.rename(conversation_id, title)
        return jsonify({"ok": True, "conversation": svc.store.get(conversation_id).to_dict()})

    @app.route("/conversations/<conversation_id>/select", methods=["POST"])
    def select_conversation(conversation_id):
        if svc.store.get(conversation_id) is None:
            return jsonify({"ok": False, "error": "unknown_conversation"}), 404
        svc.store.select(conversation_id)
        return jsonify({"ok": True, "current_id": svc.store.current_id})

    @app.route("/conversations/<conversation_id>/pin", methods=["POST"])
    def pin_conversation(conversation_id):
        try:
            pinned = svc.store.toggle_pin(conversation_id)
        except KeyError:
            return jsonify({"ok": False, "error": "unknown_conversation"}), 404
        return jsonify({"ok": True, "pinned": pinned})

    # -- chat -------------------------------------------------------------------
    @app.route("/chat", methods=["POST"])
    def chat():
        """Send one user turn and return the assistant turn that settled it."""
        body = flask_request.get_json(force=True, silent=True) or {}
        text = str(body.get("message") or "")
        images = [str(i) for i in body.get("images") or []]
        if not text.strip() and not images:
            return jsonify({"ok": False, "error": "missing_message"}), 400
        try:
            reply = svc.orchestrator.send_message(text, images or None)
        except Busy:
            return jsonify({"ok": False, "error": "busy"}), 409
        except NoActiveConversation:
            return jsonify({"ok": False, "error": "no_active_conversation"}), 400
        return jsonify({"ok": True, "message": reply.to_dict()})

    @app.route("/chat/retry", methods=["POST"])
    def chat_retry():
        body = flask_request.get_json(force=True, silent=True) or {}
        message_id = str(body.get("message_id") or "")
        try:
            reply = svc.orchestrator.retry_message(message_id)
        except Busy:
            return jsonify({"ok": False, "error": "busy"}), 409
        except NoActiveConversation:
            return jsonify({"ok": False, "error": "no_active_conversation"}), 400
        except KeyError:
            return jsonify({"ok": False, "error": "unknown_message"}), 404
        return jsonify({"ok": True, "message": reply.to_dict()})

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def configure_logging(debug: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO, format=LOG_FORMAT)
    # requests/urllib3 are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for server startup."""
    args = parse_args(argv)
    config_mod.DEBUG_MODE = args.debug
    configure_logging(args.debug)
    cfg = load_config()
    if args.data_dir:
        cfg.data_dir = Path(args.data_dir).expanduser().resolve()
    if args.port:
        cfg.bind_port = args.port

    try:
        services = build_services(cfg)
    except StorageError as exc:
        logger.error("Cannot open data directory %s: %s", cfg.data_dir, exc)
        return 1

    logger.info("DeepChat local shim")
    logger.info("  Data dir   : %s", cfg.data_dir)
    logger.info("  Bind       : %s:%s", cfg.bind_host, cfg.bind_port)
    logger.info("  Config YAML: %s", _CONFIG_YAML_STATUS)
    logger.info("  Provider   : %s (%s)", services.session.active_provider,
                services.session.selected_model)
    configured = services.credentials.configured_providers()
    logger.info("  API keys   : %s", ", ".join(configured) or "(none)")
    for pid, desc in PROVIDERS.items():
        status = "ok" if pid in configured or not desc.requires_api_key else "NO KEY"
        logger.debug("    %s: %s %s", pid, status, desc.base_url)
    logger.info("  Debug      : %s", "ON" if config_mod.DEBUG_MODE else "off")

    app = create_app(cfg, services)
    app.run(host=cfg.bind_host, port=cfg.bind_port, debug=False, threaded=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
