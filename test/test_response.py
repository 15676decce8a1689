#!/usr/bin/env python3
"""Tests for the LLM gateway: session selection, translators, dispatch, discovery.

HTTP is replaced by a MagicMock standing in for the ``requests`` module, so
each test can assert exactly what went over the wire.
"""

import json
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import requests

_project = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_project / "bin"))

from config import PROVIDERS
from credentials import CredentialStore
from errors import LLMError, MissingCredential, UnknownProvider
from response import (
    SETTINGS_KEY,
    LLMGateway,
    LLMSession,
    TokenUsage,
    to_anthropic_payload,
    to_gemini_payload,
    to_hosted_messages,
    to_openai_messages,
)
from storage import MemoryStore

IMAGE = "data:image/png;base64,iVBORw0KGgo="


def _resp(status=200, body=None, text=None):
    resp = MagicMock()
    resp.status_code = status
    if body is not None:
        resp.json.return_value = body
        resp.text = json.dumps(body)
    else:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ""
    return resp


def _gateway(provider="openai", key="sk-test", http=None, **kwargs):
    kv = MemoryStore()
    session = LLMSession(kv)
    session.set_active_provider(provider)
    creds = CredentialStore(MemoryStore())
    if key:
        creds.set(provider, key)
    http = http or MagicMock()
    return LLMGateway(session, creds, http=http, timeout_s=5, **kwargs), http, kv


class TestLLMSession(unittest.TestCase):
    def test_defaults_to_hosted_gateway(self):
        session = LLMSession(MemoryStore())
        self.assertEqual(session.active_provider, "rork")
        self.assertEqual(session.selected_model, PROVIDERS["rork"].models[0])
        self.assertFalse(session.accepts_system_role())

    def test_provider_switch_resets_model(self):
        session = LLMSession(MemoryStore())
        session.set_active_provider("openai")
        session.set_selected_model("gpt-4o-mini")
        session.set_active_provider("anthropic")
        self.assertEqual(session.selected_model, "claude-3-5-sonnet-20241022")
        self.assertTrue(session.accepts_system_role())

    def test_unknown_provider_rejected(self):
        session = LLMSession(MemoryStore())
        with self.assertRaises(UnknownProvider):
            session.set_active_provider("nope")
        self.assertEqual(session.active_provider, "rork")

    def test_selection_persists(self):
        kv = MemoryStore()
        session = LLMSession(kv)
        session.set_active_provider("groq")
        session.set_selected_model("llama-3.1-8b-instant")
        restored = LLMSession(kv)
        restored.load()
        self.assertEqual(restored.active_provider, "groq")
        self.assertEqual(restored.selected_model, "llama-3.1-8b-instant")

    def test_unknown_model_rejected(self):
        kv = MemoryStore()
        session = LLMSession(kv)
        session.set_active_provider("openai")
        with self.assertRaises(ValueError):
            session.set_selected_model("not-a-model")
        self.assertEqual(session.selected_model, "gpt-4o")
        with self.assertRaises(ValueError):
            session.set_selected_model("claude-3-haiku-20240307")
        restored = LLMSession(kv)
        restored.load()
        self.assertEqual(restored.selected_model, "gpt-4o")

    def test_corrupt_settings_keep_defaults(self):
        kv = MemoryStore({SETTINGS_KEY: "{not json"})
        session = LLMSession(kv)
        with self.assertLogs("deepchat.response", level="ERROR"):
            session.load()
        self.assertEqual(session.active_provider, "rork")


class TestOpenAICompatible(unittest.TestCase):
    def test_success_maps_content_model_and_usage(self):
        gw, http, _ = _gateway("openai")
        http.post.return_value = _resp(200, {
            "choices": [{"message": {"content": "hello"}}],
            "model": "gpt-4o",
            "usage": {"prompt_tokens": 1, "completion_tokens": 1},
        })
        result = gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(result.content, "hello")
        self.assertEqual(result.model, "gpt-4o")
        self.assertEqual(result.usage, TokenUsage(1, 1, 2))

        self.assertEqual(http.post.call_count, 1)
        args, kwargs = http.post.call_args
        self.assertEqual(args[0], "https://api.openai.com/v1/chat/completions")
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer sk-test")
        self.assertEqual(kwargs["json"]["model"], "gpt-4o")
        self.assertEqual(kwargs["json"]["messages"], [{"role": "user", "content": "hi"}])

    def test_reported_total_tokens_preferred(self):
        gw, http, _ = _gateway("groq")
        http.post.return_value = _resp(200, {
            "choices": [{"message": {"content": "x"}}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 4, "total_tokens": 9},
        })
        result = gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(result.usage.total_tokens, 9)
        self.assertEqual(result.model, "llama-3.1-70b-versatile")

    def test_absent_usage_is_none(self):
        gw, http, _ = _gateway("deepseek")
        http.post.return_value = _resp(200, {"choices": [{"message": {"content": "x"}}]})
        self.assertIsNone(gw.send_chat_message([{"role": "user", "content": "hi"}]).usage)

    def test_openrouter_adds_attribution_headers(self):
        gw, http, _ = _gateway("openrouter")
        http.post.return_value = _resp(200, {"choices": [{"message": {"content": "x"}}]})
        gw.send_chat_message([{"role": "user", "content": "hi"}])
        headers = http.post.call_args.kwargs["headers"]
        self.assertEqual(headers["HTTP-Referer"], "https://deepchat.app")
        self.assertEqual(headers["X-Title"], "DeepChat")

    def test_model_override(self):
        gw, http, _ = _gateway("openai")
        http.post.return_value = _resp(200, {"choices": [{"message": {"content": "x"}}]})
        gw.send_chat_message([{"role": "user", "content": "hi"}], model_override="gpt-4o-mini")
        self.assertEqual(http.post.call_args.kwargs["json"]["model"], "gpt-4o-mini")

    def test_image_parts_become_image_url(self):
        out = to_openai_messages([{"role": "user", "content": [
            {"type": "text", "text": "what is this"},
            {"type": "image", "image": IMAGE},
        ]}])
        self.assertEqual(out[0]["content"][1], {"type": "image_url", "image_url": {"url": IMAGE}})

    def test_keyless_ollama_sends_no_authorization(self):
        gw, http, _ = _gateway("ollama", key=None)
        http.post.return_value = _resp(200, {"choices": [{"message": {"content": "x"}}]})
        gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertNotIn("Authorization", http.post.call_args.kwargs["headers"])


class TestAnthropic(unittest.TestCase):
    def test_total_is_computed(self):
        gw, http, _ = _gateway("anthropic")
        http.post.return_value = _resp(200, {
            "content": [{"type": "text", "text": "bonjour"}],
            "model": "claude-3-5-sonnet-20241022",
            "usage": {"input_tokens": 10, "output_tokens": 5},
        })
        result = gw.send_chat_message([
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ])
        self.assertEqual(result.content, "bonjour")
        self.assertEqual(result.usage, TokenUsage(10, 5, 15))
        args, kwargs = http.post.call_args
        self.assertEqual(args[0], "https://api.anthropic.com/v1/messages")
        self.assertEqual(kwargs["headers"]["x-api-key"], "sk-test")
        self.assertEqual(kwargs["headers"]["anthropic-version"], "2023-06-01")
        self.assertEqual(kwargs["json"]["max_tokens"], 4096)
        self.assertEqual(kwargs["json"]["system"], "be brief")
        self.assertEqual(kwargs["json"]["messages"], [{"role": "user", "content": "hi"}])

    def test_consecutive_roles_merged_and_images_base64(self):
        payload = to_anthropic_payload([
            {"role": "user", "content": "first"},
            {"role": "user", "content": [{"type": "text", "text": "second"},
                                         {"type": "image", "image": IMAGE}]},
            {"role": "assistant", "content": "ok"},
        ], "claude-3-haiku-20240307")
        self.assertNotIn("system", payload)
        self.assertEqual(len(payload["messages"]), 2)
        blocks = payload["messages"][0]["content"]
        self.assertEqual([b["type"] for b in blocks], ["text", "text", "image"])
        self.assertEqual(blocks[2]["source"],
                         {"type": "base64", "media_type": "image/png", "data": "iVBORw0KGgo="})
        self.assertEqual(payload["messages"][1], {"role": "assistant", "content": "ok"})


class TestGemini(unittest.TestCase):
    def test_payload_roles_and_system_instruction(self):
        payload = to_gemini_payload([
            {"role": "system", "content": "persona"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ])
        self.assertEqual(payload["system_instruction"], {"parts": [{"text": "persona"}]})
        self.assertEqual([c["role"] for c in payload["contents"]], ["user", "model"])

    def test_request_and_usage(self):
        gw, http, _ = _gateway("google")
        http.post.return_value = _resp(200, {
            "candidates": [{"content": {"parts": [{"text": "a"}, {"text": "b"}]}}],
            "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 3, "totalTokenCount": 5},
        })
        result = gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(result.content, "ab")
        self.assertEqual(result.usage, TokenUsage(2, 3, 5))
        args, kwargs = http.post.call_args
        self.assertEqual(
            args[0],
            "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.0-flash-exp:generateContent")
        self.assertEqual(kwargs["headers"]["x-goog-api-key"], "sk-test")


class TestHostedGateway(unittest.TestCase):
    def test_strips_system_and_returns_raw_text(self):
        gw, http, _ = _gateway("rork", key=None)
        http.post.return_value = _resp(200, text="plain reply")
        result = gw.send_chat_message([
            {"role": "system", "content": "persona"},
            {"role": "user", "content": [{"type": "text", "text": "look"},
                                         {"type": "image", "image": IMAGE}]},
        ])
        self.assertEqual(result.content, "plain reply")
        self.assertEqual(result.model, "gpt-4o")
        self.assertIsNone(result.usage)
        sent = http.post.call_args.kwargs["json"]["messages"]
        self.assertEqual(len(sent), 1)
        self.assertEqual(sent[0]["role"], "user")
        self.assertEqual(sent[0]["content"][1], {"type": "image", "image": IMAGE})

    def test_hosted_messages_never_contain_system(self):
        out = to_hosted_messages([{"role": "system", "content": "x"}])
        self.assertEqual(out, [])


class TestGatewayErrors(unittest.TestCase):
    def test_missing_credential_short_circuits(self):
        gw, http, _ = _gateway("anthropic", key=None)
        with self.assertRaises(MissingCredential) as ctx:
            gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(http.post.call_count, 0)
        self.assertIn("Anthropic", str(ctx.exception))
        self.assertIsInstance(ctx.exception, LLMError)

    def test_unknown_provider(self):
        gw, http, _ = _gateway("openai")
        gw.session.active_provider = "nope"
        with self.assertRaises(UnknownProvider):
            gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(http.post.call_count, 0)

    def test_non_2xx_carries_provider_and_body(self):
        gw, http, _ = _gateway("openai")
        http.post.return_value = _resp(500, text="rate limited")
        with self.assertRaises(LLMError) as ctx:
            gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(ctx.exception.provider, "OpenAI")
        self.assertIn("rate limited", str(ctx.exception))

    def test_network_error_becomes_llm_error(self):
        gw, http, _ = _gateway("openai")
        http.post.side_effect = requests.ConnectionError("offline")
        with self.assertRaises(LLMError) as ctx:
            gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertIn("offline", str(ctx.exception))
        self.assertEqual(http.post.call_count, 1)

    def test_malformed_body_becomes_llm_error(self):
        gw, http, _ = _gateway("anthropic")
        http.post.return_value = _resp(200, {"content": []})
        with self.assertRaises(LLMError):
            gw.send_chat_message([{"role": "user", "content": "hi"}])

    def test_provider_without_translator(self):
        gw, http, _ = _gateway("cohere")
        with self.assertRaises(LLMError) as ctx:
            gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertIn("not yet implemented", str(ctx.exception))
        self.assertEqual(http.post.call_count, 0)

    def test_local_without_runner(self):
        gw, _, _ = _gateway("local", key=None)
        with self.assertRaises(LLMError):
            gw.send_chat_message([{"role": "user", "content": "hi"}])

    def test_local_runner_is_used(self):
        runner = MagicMock(return_value="on device")
        gw, _, _ = _gateway("local", key=None, local_runner=runner)
        result = gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(result.content, "on device")
        runner.assert_called_once_with([{"role": "user", "content": "hi"}], "local-default")


    def test_local_runner_failure_becomes_llm_error(self):
        runner = MagicMock(side_effect=FileNotFoundError("weights.bin"))
        gw, _, _ = _gateway("local", key=None, local_runner=runner)
        with self.assertRaises(LLMError) as ctx:
            gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(ctx.exception.provider, "On-device")
        self.assertIn("weights.bin", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, FileNotFoundError)

    def test_unexpected_exception_becomes_llm_error(self):
        gw, http, _ = _gateway("openai")
        http.post.side_effect = RuntimeError("socket closed")
        with self.assertLogs("deepchat.response", level="ERROR"):
            with self.assertRaises(LLMError) as ctx:
                gw.send_chat_message([{"role": "user", "content": "hi"}])
        self.assertEqual(str(ctx.exception), "OpenAI API error: socket closed")


class TestModelDiscovery(unittest.TestCase):
    def test_openai_filters_gpt_and_sorts(self):
        gw, http, _ = _gateway("openai")
        http.get.return_value = _resp(200, {"data": [
            {"id": "whisper-1"}, {"id": "gpt-4o"}, {"id": "gpt-3.5-turbo"}]})
        self.assertEqual(gw.list_models("openai"), ["gpt-3.5-turbo", "gpt-4o"])
        self.assertEqual(http.get.call_args.args[0], "https://api.openai.com/v1/models")

    def test_failure_falls_back_to_static_list(self):
        gw, http, _ = _gateway("groq")
        http.get.return_value = _resp(503, text="down")
        with self.assertLogs("deepchat.response", level="WARNING"):
            models = gw.list_models("groq")
        self.assertEqual(models, list(PROVIDERS["groq"].models))

    def test_missing_key_returns_static_without_http(self):
        gw, http, _ = _gateway("openrouter", key=None)
        self.assertEqual(gw.list_models("openrouter"), list(PROVIDERS["openrouter"].models))
        self.assertEqual(http.get.call_count, 0)

    def test_ollama_tags(self):
        gw, http, _ = _gateway("ollama", key=None)
        http.get.return_value = _resp(200, {"models": [{"name": "qwen2.5:7b"}, {"name": "llama3.2:3b"}]})
        self.assertEqual(gw.list_models("ollama"), ["llama3.2:3b", "qwen2.5:7b"])
        self.assertTrue(http.get.call_args.args[0].endswith("/api/tags"))

    def test_static_only_provider(self):
        gw, http, _ = _gateway("mistral")
        self.assertEqual(gw.list_models("mistral"), list(PROVIDERS["mistral"].models))
        self.assertEqual(http.get.call_count, 0)

    def test_discovered_model_becomes_selectable(self):
        gw, http, _ = _gateway("openai")
        with self.assertRaises(ValueError):
            gw.session.set_selected_model("gpt-4.1-nano")
        http.get.return_value = _resp(200, {"data": [{"id": "gpt-4.1-nano"}, {"id": "gpt-4o"}]})
        gw.list_models("openai")
        gw.session.set_selected_model("gpt-4.1-nano")
        self.assertEqual(gw.session.selected_model, "gpt-4.1-nano")
        self.assertEqual(gw.session.available_models().count("gpt-4o"), 1)

    def test_unknown_provider(self):
        gw, _, _ = _gateway("openai")
        with self.assertRaises(UnknownProvider):
            gw.list_models("nope")


if __name__ == "__main__":
    unittest.main()
