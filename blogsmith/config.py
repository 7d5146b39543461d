"""
Configuration: environment defaults and request-scoped provider credentials.

Environment values are read once at import. Per-request credentials are an
immutable :class:`ProviderCredentials` built as ``user value OR env value``
for every field independently and passed explicitly through the pipeline.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("BLOGSMITH_DATA_DIR", str(BASE_DIR / "data")))

# ---------------------------------------------------------------------------
# Provider defaults
# ---------------------------------------------------------------------------

OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-opus-4")
ANTHROPIC_VERSION = os.getenv("ANTHROPIC_VERSION", "2023-06-01")
ANTHROPIC_BASE_URL = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com")

GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-pro")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")

DEEPSEEK_MODEL = os.getenv("DEEPSEEK_MODEL", "deepseek-r1")
DEEPSEEK_BASE_URL = os.getenv("DEEPSEEK_BASE_URL", "https://api.deepseek.com")

QWEN_MODEL = os.getenv("QWEN_MODEL", "qwen-qwq-32b-preview")
QWEN_BASE_URL = os.getenv("QWEN_BASE_URL", "https://dashscope.aliyuncs.com/compatible-mode")

GROK_MODEL = os.getenv("GROK_MODEL", "grok-4")
GROK_BASE_URL = os.getenv("GROK_BASE_URL", "https://api.x.ai")

PERPLEXITY_MODEL = os.getenv("PERPLEXITY_MODEL", "sonar")
PERPLEXITY_BASE_URL = os.getenv("PERPLEXITY_BASE_URL", "https://api.perplexity.ai")

UNSPLASH_BASE_URL = os.getenv("UNSPLASH_BASE_URL", "https://api.unsplash.com")

DEFAULT_MODELS: Dict[str, str] = {
    "openai": OPENAI_MODEL,
    "anthropic": ANTHROPIC_MODEL,
    "gemini": GEMINI_MODEL,
    "deepseek": DEEPSEEK_MODEL,
    "qwen": QWEN_MODEL,
    "grok": GROK_MODEL,
}

SUPPORTED_PROVIDERS = tuple(DEFAULT_MODELS)

# Timeouts (seconds)
PROVIDER_TIMEOUT = int(os.getenv("BLOGSMITH_PROVIDER_TIMEOUT", "300"))
RESEARCH_TIMEOUT = 120
IMAGE_TIMEOUT = 30

CRON_SECRET = os.getenv("CRON_SECRET", "")

# Credential field -> environment variable fallback
_ENV_FALLBACKS: Dict[str, str] = {
    "openai_key": "OPENAI_API_KEY",
    "anthropic_key": "ANTHROPIC_API_KEY",
    "gemini_key": "GEMINI_API_KEY",
    "deepseek_key": "DEEPSEEK_API_KEY",
    "qwen_key": "QWEN_API_KEY",
    "grok_key": "GROK_API_KEY",
    "perplexity_key": "PERPLEXITY_API_KEY",
    "unsplash_key": "UNSPLASH_ACCESS_KEY",
    "wordpress_url": "WORDPRESS_URL",
    "wordpress_username": "WORDPRESS_USERNAME",
    "wordpress_password": "WORDPRESS_PASSWORD",
}

# Stored user-key names (camelCase, as saved by the web client)
STORED_KEY_NAMES: Dict[str, str] = {
    "openai_key": "openaiKey",
    "anthropic_key": "anthropicKey",
    "gemini_key": "geminiKey",
    "deepseek_key": "deepseekKey",
    "qwen_key": "qwenKey",
    "grok_key": "grokKey",
    "perplexity_key": "perplexityKey",
    "unsplash_key": "unsplashKey",
    "wordpress_url": "wordpressUrl",
    "wordpress_username": "wordpressUsername",
    "wordpress_password": "wordpressPassword",
}

_PLACEHOLDER_VALUES = {"", "your_unsplash_access_key", "your_api_key_here", "changeme"}


def is_placeholder(value: Optional[str]) -> bool:
    """True for unset keys and the sample values shipped in .env templates."""
    return (value or "").strip().lower() in _PLACEHOLDER_VALUES


# ---------------------------------------------------------------------------
# Request-scoped credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderCredentials:
    """Effective credentials for one request.

    Built per request and never shared between runs.
    """

    openai_key: str = ""
    anthropic_key: str = ""
    gemini_key: str = ""
    deepseek_key: str = ""
    qwen_key: str = ""
    grok_key: str = ""
    perplexity_key: str = ""
    unsplash_key: str = ""
    wordpress_url: str = ""
    wordpress_username: str = ""
    wordpress_password: str = ""

    anthropic_base_url: str = ANTHROPIC_BASE_URL
    anthropic_version: str = ANTHROPIC_VERSION
    gemini_base_url: str = GEMINI_BASE_URL
    deepseek_base_url: str = DEEPSEEK_BASE_URL
    qwen_base_url: str = QWEN_BASE_URL
    grok_base_url: str = GROK_BASE_URL
    perplexity_base_url: str = PERPLEXITY_BASE_URL
    unsplash_base_url: str = UNSPLASH_BASE_URL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> ProviderCredentials:
        env = os.environ if environ is None else environ
        values = {name: env.get(var, "") or "" for name, var in _ENV_FALLBACKS.items()}
        return cls(**values)

    @classmethod
    def resolve(
        cls,
        stored: Optional[Mapping[str, Any]],
        environ: Optional[Mapping[str, str]] = None,
    ) -> ProviderCredentials:
        """Merge a user's stored keys over the environment, field by field."""
        base = cls.from_env(environ)
        if not stored:
            return base
        overrides: Dict[str, str] = {}
        for name, stored_name in STORED_KEY_NAMES.items():
            value = stored.get(stored_name) or stored.get(name)
            if isinstance(value, str) and value.strip():
                overrides[name] = value.strip()
        return replace(base, **overrides)

    def key_for(self, provider: str) -> str:
        """API key for an AI or research provider id ("" when unknown)."""
        return getattr(self, f"{provider.lower()}_key", "") if provider else ""

    def has_key(self, provider: str) -> bool:
        return not is_placeholder(self.key_for(provider))

    @property
    def has_wordpress(self) -> bool:
        return bool(self.wordpress_url and self.wordpress_username and self.wordpress_password)

    def masked(self) -> Dict[str, Any]:
        """Dict view with secrets reduced to their last four characters."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name.endswith("_key") or f.name == "wordpress_password":
                out[f.name] = f"****{value[-4:]}" if value else ""
            else:
                out[f.name] = value
        return out

    def __repr__(self) -> str:
        configured = [f.name for f in fields(self) if f.name.endswith("_key") and getattr(self, f.name)]
        return f"ProviderCredentials(keys={configured}, wordpress={self.has_wordpress})"
