"""Tests for the LLM inference backend and response parsing."""

import json
import logging

import pytest
from unittest.mock import MagicMock, Mock, patch

from ctxd.common.config import InferenceConfig
from ctxd.common.errors import InferenceFailure
from ctxd.common.llm_client import LLMClient
from ctxd.common.llm_utils import as_str_list, parse_llm_json
from ctxd.common.schemas import IntentCategory
from ctxd.common.schemas.interaction import IntentSource
from ctxd.pipeline.inference import INFERENCE_POLICY, LLMInferenceBackend, build_backend


def fake_llm(response=None, error=None):
    llm = Mock()
    llm.is_available = True
    if error is not None:
        llm.generate.side_effect = error
    else:
        llm.generate.return_value = response
    return llm


class TestParseLLMJson:
    def test_plain(self):
        assert parse_llm_json('{"a": 1}') == {"a": 1}

    def test_fenced(self):
        assert parse_llm_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_preamble(self):
        assert parse_llm_json('Sure! Here you go: {"a": 1} hope that helps') == {"a": 1}

    def test_not_an_object(self):
        assert parse_llm_json("[1, 2]") == {}
        assert parse_llm_json("") == {}

    def test_as_str_list(self):
        assert as_str_list("redis") == ["redis"]
        assert as_str_list([" a ", "", 3]) == ["a", "3"]
        assert as_str_list({"x": 1}) == []
        assert as_str_list(list("abcdef"), limit=2) == ["a", "b"]


class TestLLMInferenceBackend:
    def test_valid_response(self):
        llm = fake_llm(json.dumps({
            "category": "Performance",
            "confidence": 0.92,
            "problem": "Login is slow",
            "solution": "Cache sessions in Redis",
            "alternatives": ["memcached"],
            "concepts": ["session", "Redis", "auth", "login"],
        }))
        intent = LLMInferenceBackend(llm).infer("Login is slow", ["src/auth/session.ts"])

        assert intent.category == IntentCategory.PERFORMANCE
        assert intent.confidence == 0.92
        assert intent.concepts == ["auth", "login", "redis", "session"]
        assert intent.source == IntentSource.BACKEND
        _, kwargs = llm.generate.call_args
        assert kwargs["system"] == INFERENCE_POLICY

    def test_confidence_is_clamped(self):
        llm = fake_llm('{"category": "feature", "confidence": 7}')
        assert LLMInferenceBackend(llm).infer("x", []).confidence == 1.0

    @pytest.mark.parametrize("raw", [
        "I think it is a feature",
        '{"category": "chore", "confidence": 0.9}',
        '{"category": "feature", "confidence": "high"}',
    ])
    def test_unusable_responses_raise(self, raw):
        with pytest.raises(InferenceFailure):
            LLMInferenceBackend(fake_llm(raw)).infer("x", [])

    def test_client_error_wrapped(self):
        llm = fake_llm(error=TimeoutError("read timed out"))
        with pytest.raises(InferenceFailure, match="LLM call failed"):
            LLMInferenceBackend(llm).infer("x", [])

    def test_unavailable_client(self):
        llm = Mock()
        llm.is_available = False
        with pytest.raises(InferenceFailure, match="unavailable"):
            LLMInferenceBackend(llm).infer("x", [])

    def test_prompt_lists_files(self):
        prompt = LLMInferenceBackend(fake_llm("{}")).build_prompt("Add retry", ["a.py", "b.py"], None)
        assert "Changed files:\n- a.py\n- b.py" in prompt

    def test_build_backend(self):
        assert build_backend(None, 5.0) is None
        unavailable = Mock()
        unavailable.is_available = False
        assert build_backend(unavailable, 5.0) is None
        assert isinstance(build_backend(fake_llm("{}"), 5.0), LLMInferenceBackend)


class TestLLMClient:
    @pytest.mark.parametrize("provider", ["anthropic", "openai", "google"])
    def test_missing_key_logs_info(self, caplog, provider):
        with caplog.at_level(logging.INFO, logger="ctxd.common.llm_client"):
            client = LLMClient(provider=provider)
        assert not client.is_available
        assert "API key not provided" in caplog.text

    def test_unsupported_provider_logs_warning(self, caplog):
        with caplog.at_level(logging.WARNING, logger="ctxd.common.llm_client"):
            client = LLMClient(provider="unsupported_xyz")
        assert not client.is_available
        assert "Unsupported" in caplog.text

    def test_generate_raises_when_unavailable(self):
        with pytest.raises(RuntimeError, match="not available"):
            LLMClient(provider="anthropic").generate("test")

    def test_from_config_selects_provider_model(self):
        config = InferenceConfig(provider="OpenAI", openai_model="gpt-test")
        client = LLMClient.from_config(config)
        assert client.provider == "openai"
        assert client.model == "gpt-test"

    def test_local_client_bounds_requests_with_timeout(self):
        config = InferenceConfig(provider="local", local_model="llama3", timeout_seconds=7.5)
        with patch("ollama.Client") as ollama_client:
            client = LLMClient.from_config(config)
        assert client.is_available
        assert ollama_client.call_args.kwargs["timeout"] == 7.5

    def test_anthropic_generate(self):
        client = LLMClient(provider="anthropic", model="claude-test")
        client._client = MagicMock()
        client._client.messages.create.return_value.content = [Mock(text='  {"category": "docs"} ')]

        assert client.generate("p", system="s", max_tokens=10) == '{"category": "docs"}'
        kwargs = client._client.messages.create.call_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert kwargs["system"] == "s"

    def test_openai_generate_includes_system_message(self):
        client = LLMClient(provider="openai", model="gpt-test")
        client._client = MagicMock()
        client._client.chat.completions.create.return_value.choices = [
            Mock(message=Mock(content="ok")),
        ]

        assert client.generate("p", system="s") == "ok"
        messages = client._client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "s"}
