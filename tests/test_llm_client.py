"""Tests for the multi-provider response generator."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from sms_orchestrator.models import parse_turn_plan
from sms_orchestrator.services.llm_client import (
    SAFE_FALLBACK_REPLY,
    ChatRequest,
    ResponseGenerator,
    build_fallback_chain,
)


def _llm(*contents):
    """Fake chat model returning (or raising) each item in turn."""
    llm = MagicMock()
    llm.invoke.side_effect = [
        c if isinstance(c, Exception) else MagicMock(content=c) for c in contents
    ]
    return llm


def _request(**overrides) -> ChatRequest:
    return ChatRequest(system_prompt="sys", user_prompt="hi", **overrides)


class TestFallbackChain:
    def test_requested_model_first_and_deduplicated(self):
        assert build_fallback_chain("claude-haiku-4-5", 3) == [
            "claude-haiku-4-5", "claude-sonnet-4-5", "gpt-4o",
        ]

    def test_capped_by_max_retries(self):
        assert build_fallback_chain("gpt-4o", 2) == ["gpt-4o", "claude-sonnet-4-5"]

    def test_unknown_model_kept_at_head(self):
        assert build_fallback_chain("mystery-model", 5)[0] == "mystery-model"


@patch("sms_orchestrator.services.llm_client.time.sleep")
class TestGenerate:
    def test_first_candidate_success(self, _sleep):
        generator = ResponseGenerator("a-key", "o-key")
        with patch(
            "sms_orchestrator.services.llm_client._build_anthropic_llm",
            return_value=_llm("Hello!"),
        ):
            result = generator.generate(_request())
        assert result.success is True
        assert result.content == "Hello!"
        assert result.model_used == "claude-sonnet-4-5"
        assert result.provider == "anthropic"
        assert result.fallbacks_used == 0
        _sleep.assert_not_called()

    def test_missing_credentials_fall_through_to_openai(self, _sleep):
        generator = ResponseGenerator(anthropic_api_key=None, openai_api_key="o-key")
        with patch(
            "sms_orchestrator.services.llm_client._build_openai_llm",
            return_value=_llm("From GPT"),
        ) as build_openai:
            result = generator.generate(_request())
        assert result.success is True
        assert result.model_used == "gpt-4o"
        assert result.fallbacks_used == 2
        build_openai.assert_called_once()
        assert _sleep.call_count == 2

    def test_invalid_json_moves_to_next_candidate(self, _sleep):
        generator = ResponseGenerator("a-key", "o-key")
        anthropic = MagicMock(side_effect=[_llm("not json"), _llm('{"reply": "ok"}')])
        with patch("sms_orchestrator.services.llm_client._build_anthropic_llm", anthropic):
            result = generator.generate(_request(expect_json=True))
        assert result.success is True
        assert result.model_used == "claude-haiku-4-5"
        assert result.fallbacks_used == 1

    def test_code_fenced_json_is_unwrapped(self, _sleep):
        generator = ResponseGenerator("a-key", None)
        fenced = '```json\n{"reply": "ok", "actions": []}\n```'
        with patch(
            "sms_orchestrator.services.llm_client._build_anthropic_llm",
            return_value=_llm(fenced),
        ):
            result = generator.generate(_request(expect_json=True, validator=parse_turn_plan))
        assert result.content == '{"reply": "ok", "actions": []}'

    def test_validator_rejection_counts_as_failure(self, _sleep):
        generator = ResponseGenerator("a-key", None)
        bad_plan = '{"reply": "x", "actions": [{"type": "launch_rocket"}]}'
        good_plan = '{"reply": "x", "actions": []}'
        anthropic = MagicMock(side_effect=[_llm(bad_plan), _llm(good_plan)])
        with patch("sms_orchestrator.services.llm_client._build_anthropic_llm", anthropic):
            result = generator.generate(_request(expect_json=True, validator=parse_turn_plan))
        assert result.success is True
        assert result.fallbacks_used == 1

    def test_all_candidates_failed_returns_safe_reply(self, _sleep):
        generator = ResponseGenerator("a-key", "o-key")
        boom = RuntimeError("provider down")
        with patch(
            "sms_orchestrator.services.llm_client._build_anthropic_llm",
            side_effect=lambda *a, **k: _llm(boom),
        ), patch(
            "sms_orchestrator.services.llm_client._build_openai_llm",
            side_effect=lambda *a, **k: _llm(boom),
        ):
            result = generator.generate(_request())
        assert result.success is False
        assert result.content == SAFE_FALLBACK_REPLY
        assert result.model_used == "fallback"
        assert len(result.errors) == 3

    def test_no_credentials_at_all(self, _sleep):
        result = ResponseGenerator(None, None).generate(_request())
        assert result.success is False
        assert result.content

    def test_empty_content_is_rejected(self, _sleep):
        generator = ResponseGenerator("a-key", None)
        anthropic = MagicMock(side_effect=[_llm("   "), _llm("Real answer")])
        with patch("sms_orchestrator.services.llm_client._build_anthropic_llm", anthropic):
            result = generator.generate(_request())
        assert result.content == "Real answer"

    def test_clients_are_cached_per_model(self, _sleep):
        generator = ResponseGenerator("a-key", None)
        llm = _llm("one", "two")
        with patch(
            "sms_orchestrator.services.llm_client._build_anthropic_llm", return_value=llm,
        ) as build:
            generator.generate(_request())
            generator.generate(_request())
        build.assert_called_once()
