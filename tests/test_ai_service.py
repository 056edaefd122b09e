"""
Tests for intakeflow/services/ai.py - provider selection and failover.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from intakeflow.services.ai import _sanitize_output_text, generate_response
from intakeflow.utils.errors import TransientError


def _settings(openai_key="sk-test", anthropic_key="ak-test"):
    s = MagicMock()
    s.openai_api_key = openai_key
    s.anthropic_api_key = anthropic_key
    return s


def _ok(provider):
    return {"content": "{}", "provider": provider, "model": "m", "latency_ms": 1, "input_tokens": 1, "output_tokens": 1}


class TestGenerateResponse:
    async def test_openai_primary(self):
        with (
            patch("intakeflow.config.get_settings", return_value=_settings()),
            patch("intakeflow.services.ai._generate_openai", new_callable=AsyncMock, return_value=_ok("openai")),
            patch("intakeflow.services.ai._generate_anthropic", new_callable=AsyncMock) as anthropic,
        ):
            result = await generate_response("sys", "user")
        assert result["provider"] == "openai"
        anthropic.assert_not_awaited()

    async def test_falls_back_to_anthropic(self):
        with (
            patch("intakeflow.config.get_settings", return_value=_settings()),
            patch("intakeflow.services.ai._generate_openai", new_callable=AsyncMock, side_effect=RuntimeError("503")),
            patch("intakeflow.services.ai._generate_anthropic", new_callable=AsyncMock, return_value=_ok("anthropic")),
        ):
            result = await generate_response("sys", "user")
        assert result["provider"] == "anthropic"

    async def test_all_providers_failing_is_transient(self):
        with (
            patch("intakeflow.config.get_settings", return_value=_settings()),
            patch("intakeflow.services.ai._generate_openai", new_callable=AsyncMock, side_effect=RuntimeError("x")),
            patch("intakeflow.services.ai._generate_anthropic", new_callable=AsyncMock, side_effect=RuntimeError("y")),
        ):
            with pytest.raises(TransientError) as exc_info:
                await generate_response("sys", "user")
        assert "openai: RuntimeError" in str(exc_info.value)

    async def test_no_provider_configured(self):
        with patch("intakeflow.config.get_settings", return_value=_settings("", "")):
            with pytest.raises(TransientError):
                await generate_response("sys", "user")


class TestSanitizeOutput:
    def test_think_blocks_removed(self):
        assert _sanitize_output_text("<think>hmm</think> {\"a\": 1}") == '{"a": 1}'

    def test_empty(self):
        assert _sanitize_output_text("") == ""
