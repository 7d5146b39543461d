"""
Tests for the exception hierarchy and user-facing error classification.
"""

import pytest

from blogsmith.errors import (
    BlogsmithError,
    ContentGenerationError,
    GENERIC_HINT,
    ProviderError,
    classify_error,
    classify_publish_error,
    provider_display_name,
)


class TestHierarchy:

    @pytest.mark.unit
    def test_provider_error_carries_status_and_provider(self):
        err = ProviderError("boom", status_code=502, provider="gemini")
        assert isinstance(err, BlogsmithError)
        assert err.status_code == 502
        assert err.provider == "gemini"
        assert str(err) == "boom"

    @pytest.mark.unit
    def test_content_generation_error_is_blogsmith_error(self):
        assert issubclass(ContentGenerationError, BlogsmithError)


class TestClassify:

    @pytest.mark.unit
    def test_billing_by_status(self):
        out = classify_error(ProviderError("payment required", status_code=402, provider="openai"))
        assert "Insufficient credits" in out.message
        assert "OpenAI" in out.message
        assert "$5" in out.hint

    @pytest.mark.unit
    def test_billing_perplexity_minimum(self):
        out = classify_error(ProviderError("insufficient balance", provider="perplexity"))
        assert "$10" in out.hint

    @pytest.mark.unit
    def test_invalid_key(self):
        out = classify_error(ProviderError("nope", status_code=401), provider="anthropic")
        assert out.message == "Invalid API key for Anthropic"

    @pytest.mark.unit
    def test_invalid_key_by_text(self):
        out = classify_error(RuntimeError("Incorrect API key provided: sk-xx"), provider="openai")
        assert out.message.startswith("Invalid API key")

    @pytest.mark.unit
    def test_rate_limit(self):
        out = classify_error(ProviderError("slow down", status_code=429, provider="grok"))
        assert out.message == "Rate limit exceeded for xAI Grok"
        assert "Wait" in out.hint

    @pytest.mark.unit
    def test_model_not_found(self):
        out = classify_error(RuntimeError("The model does not exist"), provider="openai")
        assert out.message == "Invalid model selected"

    @pytest.mark.unit
    def test_network(self):
        out = classify_error(RuntimeError("Connection timed out"))
        assert out.message == "Network connection error"

    @pytest.mark.unit
    def test_unclassified_keeps_raw_message(self):
        out = classify_error(ValueError("Something odd"))
        assert out.message == "Something odd"
        assert out.hint == GENERIC_HINT

    @pytest.mark.unit
    def test_exception_provider_wins_over_argument(self):
        out = classify_error(ProviderError("x", status_code=401, provider="deepseek"), provider="openai")
        assert "DeepSeek" in out.message

    @pytest.mark.unit
    def test_to_dict(self):
        assert set(classify_error(ValueError("x")).to_dict()) == {"message", "hint"}

    @pytest.mark.unit
    def test_display_name_fallbacks(self):
        assert provider_display_name(None) == "the AI provider"
        assert provider_display_name("mistral") == "mistral"
        assert provider_display_name("QWEN") == "Alibaba Qwen"


class TestClassifyPublish:

    @pytest.mark.unit
    def test_permission_error_names_wordpress(self):
        exc = BlogsmithError("Sorry, you are not allowed to create posts")
        exc.status_code = 403
        result = classify_publish_error(exc)
        assert result.message == "WordPress user lacks permission to publish"
        assert "credits" not in result.message

    @pytest.mark.unit
    def test_auth_failure(self):
        exc = BlogsmithError("rest_not_logged_in")
        exc.status_code = 401
        assert classify_publish_error(exc).message == "WordPress authentication failed"

    @pytest.mark.unit
    def test_network_failure(self):
        assert classify_publish_error(OSError("Connection refused")).message == (
            "Could not reach the WordPress site"
        )

    @pytest.mark.unit
    def test_fallback_keeps_raw_message(self):
        result = classify_publish_error(ValueError("bad payload"))
        assert result.message == "WordPress publishing failed: bad payload"
