"""
Exception hierarchy and user-facing error classification.

Provider failures are matched heuristically on HTTP status and message
text, since none of the integrated providers share an error schema.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("blogsmith.errors")

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class BlogsmithError(Exception):
    """Base exception for the article service."""


class ProviderError(BlogsmithError):
    """An AI, research or image provider returned an error."""

    def __init__(self, message: str, status_code: int = 0, provider: str = ""):
        self.status_code = status_code
        self.provider = provider
        super().__init__(message)


class ContentGenerationError(BlogsmithError):
    """A model returned no usable content (empty or unparseable)."""


class ValidationError(BlogsmithError):
    """Caller input violates a precondition."""


class ArticleNotFoundError(BlogsmithError):
    """No stored article with the requested id for this user."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

PROVIDER_NAMES: Dict[str, str] = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "gemini": "Google Gemini",
    "deepseek": "DeepSeek",
    "qwen": "Alibaba Qwen",
    "grok": "xAI Grok",
    "perplexity": "Perplexity",
}

GENERIC_HINT = "Check your API keys and account credits, then try again."

_BILLING_KEYWORDS = ("billing", "insufficient", "quota exceeded", "credit")
_AUTH_KEYWORDS = ("invalid api key", "invalid_api_key", "incorrect api key", "authentication", "unauthorized")
_RATE_KEYWORDS = ("rate limit", "rate_limit", "too many requests", "quota")
_MODEL_KEYWORDS = ("model not found", "invalid model", "model does not exist", "model_not_found")
_NETWORK_KEYWORDS = ("timeout", "timed out", "network", "connection", "econnrefused", "enotfound", "name resolution")


@dataclass
class ClassifiedError:
    """User-facing message plus an actionable hint."""

    message: str
    hint: str = GENERIC_HINT

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _status_of(exc: BaseException) -> int:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return 0


def provider_display_name(provider: Optional[str]) -> str:
    if not provider:
        return "the AI provider"
    return PROVIDER_NAMES.get(provider.lower(), provider)


def classify_error(exc: BaseException, provider: Optional[str] = None) -> ClassifiedError:
    """Map an exception to a user-facing message and hint.

    The provider is taken from the exception when it carries one, else from
    *provider*. Status codes win over message text.
    """
    provider = getattr(exc, "provider", None) or provider
    name = provider_display_name(provider)
    raw = str(exc) or type(exc).__name__
    text = raw.lower()
    status = _status_of(exc)

    if status in (402, 403) or any(k in text for k in _BILLING_KEYWORDS):
        minimum = "$10" if (provider or "").lower() == "perplexity" else "$5"
        return ClassifiedError(
            message=f"Insufficient credits in your {name} account",
            hint=f"Add at least {minimum} of credit to your {name} account and try again.",
        )
    if status == 401 or any(k in text for k in _AUTH_KEYWORDS):
        return ClassifiedError(
            message=f"Invalid API key for {name}",
            hint=f"Regenerate your {name} API key in the provider dashboard and update it in Settings.",
        )
    if status == 429 or any(k in text for k in _RATE_KEYWORDS):
        return ClassifiedError(
            message=f"Rate limit exceeded for {name}",
            hint="Wait a minute before retrying, or upgrade your plan for higher limits.",
        )
    if any(k in text for k in _MODEL_KEYWORDS):
        return ClassifiedError(
            message="Invalid model selected",
            hint=f"Choose a model that your {name} account has access to.",
        )
    if any(k in text for k in _NETWORK_KEYWORDS):
        return ClassifiedError(
            message="Network connection error",
            hint="Check your internet connection and try again.",
        )
    return ClassifiedError(message=raw, hint=GENERIC_HINT)


def classify_publish_error(exc: BaseException) -> ClassifiedError:
    """Map a failure of the WordPress stage to a message naming WordPress."""
    raw = str(exc) or type(exc).__name__
    text = raw.lower()
    status = _status_of(exc)

    if status == 401:
        return ClassifiedError(
            message="WordPress authentication failed",
            hint="Check the WordPress username and application password in Settings.",
        )
    if status == 403:
        return ClassifiedError(
            message="WordPress user lacks permission to publish",
            hint="Use an account with the Author role or higher.",
        )
    if status == 404:
        return ClassifiedError(
            message="WordPress REST API not found",
            hint="Check the site URL and that the REST API is reachable at /wp-json.",
        )
    if status == 429:
        return ClassifiedError(
            message="Rate limit exceeded for WordPress",
            hint="Wait a minute before publishing again.",
        )
    if any(k in text for k in _NETWORK_KEYWORDS):
        return ClassifiedError(
            message="Could not reach the WordPress site",
            hint="Check the site URL and that the site is online.",
        )
    return ClassifiedError(
        message=f"WordPress publishing failed: {raw}",
        hint="Check your WordPress settings and try again.",
    )
