"""
Provider adapter: one chat-generation call across six AI backends.

Normalizes OpenAI (chat completions, plus the Responses API for the
``gpt-5`` family), Anthropic, Google Gemini, DeepSeek, Qwen and Grok behind
a single coroutine::

    generate(messages, options) -> GenerationResult(text, usage)

Every call adds its token usage to adapter-local counters readable through
:meth:`AITextGenerator.get_usage_totals`. Calls are never retried: each one
may be billed.

Usage:
    from blogsmith.ai_client import AITextGenerator
    from blogsmith.config import ProviderCredentials
    from blogsmith.models import GenerateOptions

    async with AITextGenerator(ProviderCredentials.from_env()) as ai:
        result = await ai.generate(
            [{"role": "user", "content": "Say hello"}],
            GenerateOptions(provider="anthropic", max_tokens=200),
        )
        print(result.text, ai.get_usage_totals())
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
import anthropic
import openai

from blogsmith.config import (
    DEFAULT_MODELS,
    PROVIDER_TIMEOUT,
    ProviderCredentials,
)
from blogsmith.errors import ProviderError
from blogsmith.models import GenerateOptions, GenerationResult, TokenUsage

logger = logging.getLogger("blogsmith.ai_client")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Reasoning models spend most of the output budget on hidden reasoning
REASONING_TOKEN_MULTIPLIER = 10
REASONING_DEFAULT_MAX_TOKENS = 16000

ANTHROPIC_DEFAULT_MAX_TOKENS = 1024

OPENAI_COMPATIBLE_PROVIDERS = ("deepseek", "qwen", "grok")

_EFFORT_MAP: Dict[str, str] = {
    "minimal": "minimal",
    "faible": "low",
    "low": "low",
    "moyen": "medium",
    "medium": "medium",
    "élevé": "high",
    "eleve": "high",
    "high": "high",
}

_VERBOSITY_MAP: Dict[str, str] = {
    "faible": "low",
    "low": "low",
    "moyenne": "medium",
    "medium": "medium",
    "élevée": "high",
    "elevee": "high",
    "haute": "high",
    "high": "high",
}

_LONG_TEXT_RE = re.compile(r'"text"\s*:\s*"([^"]{50,})"')

ChatMessage = Dict[str, str]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_reasoning_model(model: Optional[str]) -> bool:
    """Models served through the Responses API (``gpt-5`` family)."""
    return bool(model) and model.lower().startswith("gpt-5")


def map_effort(value: Optional[str]) -> Optional[str]:
    return _EFFORT_MAP.get(value.lower()) if value else None


def map_verbosity(value: Optional[str]) -> Optional[str]:
    return _VERBOSITY_MAP.get(value.lower()) if value else None


def _field(obj: Any, name: str) -> Any:
    """Read *name* from an SDK object or a plain dict."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _int(value: Any) -> int:
    return value if isinstance(value, int) else 0


def _serialize(response: Any) -> str:
    dump = getattr(response, "model_dump_json", None)
    if callable(dump):
        dumped = dump()
        if isinstance(dumped, str):
            return dumped
    try:
        return json.dumps(response, default=lambda o: getattr(o, "__dict__", str(o)))
    except (TypeError, ValueError):
        return str(response)


def _text_parts(content: Any) -> str:
    parts = content or []
    return "".join(
        _field(c, "text") or ""
        for c in parts
        if _field(c, "type") in ("output_text", "text")
    )


def extract_responses_text(response: Any) -> str:
    """Pull visible text out of a Responses API payload.

    Order: ``output_text``; the first ``message`` item; every content part of
    every output item; finally a scan of the serialized payload for any long
    ``"text"`` field.
    """
    text = _field(response, "output_text") or ""
    output = _field(response, "output")

    if not text and isinstance(output, list):
        message = next((item for item in output if _field(item, "type") == "message"), None)
        if message is not None:
            text = _text_parts(_field(message, "content"))
        if not text:
            text = "".join(_text_parts(_field(item, "content")) for item in output)

    if not text.strip():
        serialized = _serialize(response)
        logger.warning("Reasoning model returned empty output (%d chars payload)", len(serialized))
        if len(serialized) > 100:
            match = _LONG_TEXT_RE.search(serialized)
            if match:
                logger.info("Recovered text from serialized response")
                text = match.group(1)
    return text or ""


# ---------------------------------------------------------------------------
# AITextGenerator
# ---------------------------------------------------------------------------


class AITextGenerator:
    """
    Chat-generation adapter bound to one request's credentials.

    Parameters
    ----------
    credentials : ProviderCredentials
        Request-scoped keys and base URLs.
    default_model : str, optional
        Model used when a call's options carry none. Falls back to the
        provider's configured default.
    timeout : int
        Per-call timeout in seconds for the REST providers.
    """

    def __init__(
        self,
        credentials: ProviderCredentials,
        default_model: Optional[str] = None,
        timeout: int = PROVIDER_TIMEOUT,
    ) -> None:
        self.credentials = credentials
        self.default_model = default_model
        self.timeout = timeout
        self._usage = TokenUsage()
        self._session: Optional[aiohttp.ClientSession] = None
        self._openai: Optional[openai.AsyncOpenAI] = None
        self._anthropic: Optional[anthropic.AsyncAnthropic] = None

    # -- Clients ------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session used by the REST providers."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json", "User-Agent": "Blogsmith/1.0"},
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    def _openai_client(self) -> openai.AsyncOpenAI:
        if self._openai is None:
            self._openai = openai.AsyncOpenAI(api_key=self.credentials.openai_key, max_retries=0)
        return self._openai

    def _anthropic_client(self) -> anthropic.AsyncAnthropic:
        if self._anthropic is None:
            self._anthropic = anthropic.AsyncAnthropic(
                api_key=self.credentials.anthropic_key,
                base_url=self.credentials.anthropic_base_url,
                default_headers={"anthropic-version": self.credentials.anthropic_version},
                max_retries=0,
            )
        return self._anthropic

    async def close(self) -> None:
        """Close the HTTP session and SDK clients."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        for client in (self._openai, self._anthropic):
            if client is not None:
                await client.close()
        self._openai = None
        self._anthropic = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -- Usage --------------------------------------------------------------

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(self._usage.prompt_tokens, self._usage.completion_tokens)

    def get_usage_totals(self) -> Dict[str, int]:
        """Cumulative ``{input, output, total}`` across every call so far."""
        return self._usage.to_totals()

    # -- Public API ---------------------------------------------------------

    async def generate(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[GenerateOptions] = None,
    ) -> GenerationResult:
        """
        Run one chat-style generation.

        Parameters
        ----------
        messages : sequence of dict
            Ordered ``{"role", "content"}`` turns (system, user, assistant).
        options : GenerateOptions, optional
            Provider, model, temperature, token cap, reasoning knobs.

        Returns
        -------
        GenerationResult
            Text (possibly empty) and the usage delta of this call. An
            unsupported provider yields empty text and zero usage.

        Raises
        ------
        ProviderError
            When the provider rejects the call or the network fails.
        """
        opts = options or GenerateOptions()
        provider = (opts.provider or "openai").lower()
        model = opts.model or self.default_model or DEFAULT_MODELS.get(provider, "")

        logger.debug(
            "AI call: provider=%s model=%s max_tokens=%s temperature=%.1f messages=%d",
            provider, model, opts.max_tokens, opts.temperature, len(messages),
        )

        start_time = time.monotonic()
        try:
            if provider == "openai":
                if is_reasoning_model(model):
                    result = await self._generate_responses(messages, model, opts)
                else:
                    result = await self._generate_openai_chat(messages, model, opts)
            elif provider == "anthropic":
                result = await self._generate_anthropic(messages, model, opts)
            elif provider == "gemini":
                result = await self._generate_gemini(messages, model, opts)
            elif provider in OPENAI_COMPATIBLE_PROVIDERS:
                result = await self._generate_compatible(provider, messages, model, opts)
            else:
                logger.warning("Unsupported AI provider %r", provider)
                return GenerationResult(text="")
        except ProviderError:
            elapsed = time.monotonic() - start_time
            logger.error("AI call to %s failed after %.1fs", provider, elapsed)
            raise

        self._usage.add(result.usage)
        elapsed = time.monotonic() - start_time
        logger.debug(
            "AI response: provider=%s %d chars in %.1fs (input_tokens=%d, output_tokens=%d)",
            provider,
            len(result.text),
            elapsed,
            result.usage.prompt_tokens,
            result.usage.completion_tokens,
        )
        return result

    async def generate_text(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[GenerateOptions] = None,
    ) -> str:
        """Shorthand for :meth:`generate` returning only the text."""
        result = await self.generate(messages, options)
        return result.text

    # -- OpenAI -------------------------------------------------------------

    async def _generate_openai_chat(
        self, messages: Sequence[ChatMessage], model: str, opts: GenerateOptions
    ) -> GenerationResult:
        kwargs: Dict[str, Any] = {
            "model": model,
            "messages": [dict(m) for m in messages],
            "temperature": opts.temperature,
        }
        if opts.max_tokens:
            kwargs["max_tokens"] = opts.max_tokens

        try:
            completion = await self._openai_client().chat.completions.create(**kwargs)
        except openai.APIStatusError as exc:
            raise ProviderError(str(exc), status_code=exc.status_code, provider="openai") from exc
        except openai.APIError as exc:
            raise ProviderError(f"Network connection error: {exc}", provider="openai") from exc

        usage = _field(completion, "usage")
        choices = _field(completion, "choices") or []
        text = ""
        if choices:
            text = _field(_field(choices[0], "message"), "content") or ""
        return GenerationResult(
            text=text,
            usage=TokenUsage(_int(_field(usage, "prompt_tokens")), _int(_field(usage, "completion_tokens"))),
        )

    async def _generate_responses(
        self, messages: Sequence[ChatMessage], model: str, opts: GenerateOptions
    ) -> GenerationResult:
        kwargs: Dict[str, Any] = {
            "model": model,
            "input": [
                {"role": m["role"], "content": [{"type": "input_text", "text": m["content"]}]}
                for m in messages
            ],
            "max_output_tokens": (
                opts.max_tokens * REASONING_TOKEN_MULTIPLIER
                if opts.max_tokens
                else REASONING_DEFAULT_MAX_TOKENS
            ),
        }
        effort = map_effort(opts.reasoning_effort)
        if effort:
            kwargs["reasoning"] = {"effort": effort}
        verbosity = map_verbosity(opts.verbosity)
        if verbosity:
            kwargs["text"] = {"verbosity": verbosity}

        try:
            response = await self._openai_client().responses.create(**kwargs)
        except openai.APIStatusError as exc:
            raise ProviderError(str(exc), status_code=exc.status_code, provider="openai") from exc
        except openai.APIError as exc:
            raise ProviderError(f"Network connection error: {exc}", provider="openai") from exc

        usage = _field(response, "usage")
        return GenerationResult(
            text=extract_responses_text(response),
            usage=TokenUsage(_int(_field(usage, "input_tokens")), _int(_field(usage, "output_tokens"))),
        )

    # -- Anthropic ----------------------------------------------------------

    async def _generate_anthropic(
        self, messages: Sequence[ChatMessage], model: str, opts: GenerateOptions
    ) -> GenerationResult:
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [
            {"role": m["role"], "content": m["content"]}
            for m in messages
            if m["role"] != "system"
        ]
        kwargs: Dict[str, Any] = {
            "model": model,
            "max_tokens": opts.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
            "temperature": opts.temperature,
            "messages": turns,
        }
        if system:
            kwargs["system"] = system

        try:
            response = await self._anthropic_client().messages.create(**kwargs)
        except anthropic.APIStatusError as exc:
            raise ProviderError(str(exc), status_code=exc.status_code, provider="anthropic") from exc
        except anthropic.APIError as exc:
            raise ProviderError(f"Network connection error: {exc}", provider="anthropic") from exc

        blocks = _field(response, "content") or []
        text = "".join(_field(b, "text") or "" for b in blocks)
        usage = _field(response, "usage")
        return GenerationResult(
            text=text,
            usage=TokenUsage(_int(_field(usage, "input_tokens")), _int(_field(usage, "output_tokens"))),
        )

    # -- REST providers -----------------------------------------------------

    async def _post_json(
        self,
        provider: str,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """POST *payload* and return the decoded JSON body.

        Raises ``ProviderError`` with the HTTP status on any non-2xx answer.
        """
        session = await self._get_session()
        try:
            async with session.post(url, json=payload, headers=headers, params=params) as resp:
                try:
                    body = await resp.json(content_type=None)
                except (json.JSONDecodeError, ValueError):
                    body = {"error": {"message": await resp.text()}}
                if resp.status >= 400:
                    message = body
                    if isinstance(body, dict):
                        err = body.get("error")
                        message = err.get("message", err) if isinstance(err, dict) else (err or body)
                    raise ProviderError(
                        f"HTTP {resp.status} from {provider}: {message}",
                        status_code=resp.status,
                        provider=provider,
                    )
                return body if isinstance(body, dict) else {}
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ProviderError(
                f"Network connection error calling {provider}: {exc or type(exc).__name__}",
                provider=provider,
            ) from exc

    async def _generate_gemini(
        self, messages: Sequence[ChatMessage], model: str, opts: GenerateOptions
    ) -> GenerationResult:
        generation_config: Dict[str, Any] = {"temperature": opts.temperature}
        if opts.max_tokens:
            generation_config["maxOutputTokens"] = opts.max_tokens
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": f"{m['role']}: {m['content']}"} for m in messages],
                }
            ],
            "generationConfig": generation_config,
        }
        url = f"{self.credentials.gemini_base_url}/models/{model}:generateContent"
        data = await self._post_json("gemini", url, payload, params={"key": self.credentials.gemini_key})

        candidates = data.get("candidates") or []
        parts: List[Dict[str, Any]] = []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)

        meta = data.get("usageMetadata") or {}
        prompt = _int(meta.get("promptTokenCount"))
        total = _int(meta.get("totalTokenCount"))
        # Output includes thinking tokens, which only show up in the total
        output = total - prompt if total else _int(meta.get("candidatesTokenCount"))
        return GenerationResult(text=text, usage=TokenUsage(prompt, max(0, output)))

    async def _generate_compatible(
        self, provider: str, messages: Sequence[ChatMessage], model: str, opts: GenerateOptions
    ) -> GenerationResult:
        base_url = getattr(self.credentials, f"{provider}_base_url")
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [dict(m) for m in messages],
            "temperature": opts.temperature,
        }
        if opts.max_tokens:
            payload["max_tokens"] = opts.max_tokens
        data = await self._post_json(
            provider,
            f"{base_url}/v1/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self.credentials.key_for(provider)}"},
        )
        choices = data.get("choices") or []
        text = ""
        if choices:
            text = (choices[0].get("message") or {}).get("content") or ""
        usage = data.get("usage") or {}
        return GenerationResult(
            text=text,
            usage=TokenUsage(_int(usage.get("prompt_tokens")), _int(usage.get("completion_tokens"))),
        )

    def __repr__(self) -> str:
        return f"AITextGenerator(usage={self.get_usage_totals()})"
