"""
Tests for request-scoped provider credentials.
"""

import pytest

from blogsmith.config import ProviderCredentials, is_placeholder


ENV = {
    "OPENAI_API_KEY": "env-openai",
    "PERPLEXITY_API_KEY": "env-pplx",
    "WORDPRESS_URL": "https://env.example.com",
    "WORDPRESS_USERNAME": "env-user",
    "WORDPRESS_PASSWORD": "env-pass",
}


class TestProviderCredentials:

    @pytest.mark.unit
    def test_from_env(self):
        creds = ProviderCredentials.from_env(ENV)
        assert creds.openai_key == "env-openai"
        assert creds.anthropic_key == ""
        assert creds.has_wordpress is True

    @pytest.mark.unit
    def test_resolve_per_field(self):
        """A stored key overrides only its own provider; others fall back to env."""
        creds = ProviderCredentials.resolve({"openaiKey": "user-openai"}, ENV)
        assert creds.openai_key == "user-openai"
        assert creds.perplexity_key == "env-pplx"

    @pytest.mark.unit
    def test_resolve_ignores_blank_values(self):
        creds = ProviderCredentials.resolve({"openaiKey": "   ", "perplexityKey": ""}, ENV)
        assert creds.openai_key == "env-openai"
        assert creds.perplexity_key == "env-pplx"

    @pytest.mark.unit
    def test_resolve_accepts_snake_names(self):
        creds = ProviderCredentials.resolve({"gemini_key": "g-key"}, {})
        assert creds.gemini_key == "g-key"

    @pytest.mark.unit
    def test_resolve_does_not_mutate_environment_object(self):
        base = ProviderCredentials.from_env(ENV)
        ProviderCredentials.resolve({"openaiKey": "other"}, ENV)
        assert ProviderCredentials.from_env(ENV) == base

    @pytest.mark.unit
    def test_frozen(self):
        creds = ProviderCredentials()
        with pytest.raises(Exception):
            creds.openai_key = "x"

    @pytest.mark.unit
    def test_key_for_and_has_key(self, credentials):
        assert credentials.key_for("OpenAI") == "sk-test-openai-1234"
        assert credentials.key_for("unknown") == ""
        assert credentials.has_key("grok") is True
        assert ProviderCredentials().has_key("openai") is False

    @pytest.mark.unit
    def test_masked_hides_secrets(self, credentials):
        masked = credentials.masked()
        assert masked["openai_key"] == "****1234"
        assert masked["wordpress_url"] == "https://blog.example.com"
        assert "abcd" not in masked["wordpress_password"]

    @pytest.mark.unit
    def test_repr_has_no_secrets(self, credentials):
        assert "sk-test" not in repr(credentials)

    @pytest.mark.unit
    def test_only_masked_export(self, credentials):
        assert not hasattr(credentials, "to_dict")
        assert "sk-test-openai-1234" not in str(credentials.masked())


class TestPlaceholder:

    @pytest.mark.unit
    def test_placeholders(self):
        assert is_placeholder(None)
        assert is_placeholder("  ")
        assert is_placeholder("your_unsplash_access_key")
        assert not is_placeholder("real-key")
