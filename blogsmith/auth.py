"""
Blogsmith: Authentication & Security
====================================

Who is calling, how often, and whether the scheduler trigger is genuine.

- Bearer tokens (``bs_<token_urlsafe(32)>``) resolve to a user id. Only
  SHA-256 hashes are kept, in ``<data dir>/auth/tokens.json``.
- ``BLOGSMITH_API_TOKEN`` adds one extra token owned by
  ``BLOGSMITH_DEFAULT_USER``.
- ``BLOGSMITH_AUTH_DISABLED=true`` turns every request into the ``dev`` user
  (or the ``X-User-ID`` header) and switches rate limiting off.
- The publish sweep is reached only with
  ``Authorization: Bearer <CRON_SECRET>``.

Token management:
    python -m blogsmith.auth generate --user alice [--expires-days 30]
    python -m blogsmith.auth list
    python -m blogsmith.auth revoke --user alice
    python -m blogsmith.auth verify --token bs_...
"""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import os
import secrets
import sys
import time
from collections import defaultdict, deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Deque, Dict, List, Optional

from fastapi import HTTPException, Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse, Response

from blogsmith.config import CRON_SECRET, DATA_DIR
from blogsmith.utils import load_json, now_iso, save_json

logger = logging.getLogger("blogsmith.auth")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TOKEN_PREFIX = "bs_"
ENV_TOKEN_USER = os.getenv("BLOGSMITH_DEFAULT_USER", "default")
DEV_USER = "dev"

TOKENS_FILE = DATA_DIR / "auth" / "tokens.json"

SECURITY_HEADERS: Dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

WINDOW_SECONDS = 60.0
BURST_SECONDS = 1.0


def _hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


@dataclass
class TokenInfo:
    """One issued token. The raw value is never kept."""

    user_id: str
    token_hash: str
    created_at: str
    expires_at: Optional[str] = None
    last_used: Optional[str] = None

    def is_expired(self) -> bool:
        if not self.expires_at:
            return False
        try:
            return datetime.fromisoformat(self.expires_at) <= datetime.now(timezone.utc)
        except ValueError:
            return False


class TokenAuth:
    """
    Token registry backed by a JSON file keyed by token hash.

    Parameters
    ----------
    token_env_var : str
        Environment variable with an optional extra token for
        ``ENV_TOKEN_USER``.
    tokens_file : str, optional
        Registry location; defaults to ``TOKENS_FILE``.
    """

    def __init__(self, token_env_var: str = "BLOGSMITH_API_TOKEN", tokens_file: Optional[str] = None) -> None:
        self._env_token = os.getenv(token_env_var) or ""
        self._path = Path(tokens_file) if tokens_file else TOKENS_FILE
        self._lock = Lock()
        self._tokens: Dict[str, TokenInfo] = {}
        for token_hash, entry in load_json(self._path, {}).items():
            try:
                self._tokens[token_hash] = TokenInfo(token_hash=token_hash, **entry)
            except TypeError:
                logger.warning("Ignoring malformed token entry %s...", token_hash[:12])
        if self._tokens:
            logger.info("Loaded %d token(s) from %s", len(self._tokens), self._path)

    def _persist(self) -> None:
        registry = {}
        for token_hash, info in self._tokens.items():
            entry = asdict(info)
            entry.pop("token_hash")
            registry[token_hash] = entry
        save_json(self._path, registry)

    def generate_token(self, user_id: str, expires_days: Optional[int] = None) -> str:
        """Issue a token for *user_id*; the raw value is returned once and never stored."""
        raw = TOKEN_PREFIX + secrets.token_urlsafe(32)
        issued = datetime.now(timezone.utc)
        expires = (issued + timedelta(days=expires_days)).isoformat() if expires_days else None
        info = TokenInfo(user_id, _hash(raw), issued.isoformat(), expires_at=expires)
        with self._lock:
            self._tokens[info.token_hash] = info
            self._persist()
        logger.info("Issued token for '%s' (%s...)", user_id, info.token_hash[:12])
        return raw

    def validate_token(self, token: str) -> Optional[TokenInfo]:
        """The token's record, or ``None`` when unknown or expired."""
        if not token:
            return None
        if self._env_token and secrets.compare_digest(token, self._env_token):
            return TokenInfo(ENV_TOKEN_USER, _hash(token), "")

        with self._lock:
            info = self._tokens.get(_hash(token))
            if info is None:
                return None
            if info.is_expired():
                logger.info("Expired token presented for '%s'", info.user_id)
                return None
            info.last_used = now_iso()
            try:
                self._persist()
            except OSError as exc:
                logger.debug("Could not record token use: %s", exc)
        return info

    def revoke_token(self, token: Optional[str] = None, user_id: Optional[str] = None) -> bool:
        """Drop one token by raw value, or all tokens of *user_id*."""
        with self._lock:
            if token:
                doomed = [_hash(token)] if _hash(token) in self._tokens else []
            elif user_id:
                doomed = [h for h, info in self._tokens.items() if info.user_id == user_id]
            else:
                doomed = []
            for token_hash in doomed:
                del self._tokens[token_hash]
            if doomed:
                self._persist()
        if doomed:
            logger.info("Revoked %d token(s)", len(doomed))
        return bool(doomed)

    def list_tokens(self) -> List[TokenInfo]:
        """Live tokens, hashes shortened for display."""
        with self._lock:
            live = [info for info in self._tokens.values() if not info.is_expired()]
        return [
            TokenInfo(i.user_id, i.token_hash[:12] + "...", i.created_at, i.expires_at, i.last_used)
            for i in live
        ]


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class RateLimiter:
    """
    Per-client request budget: a one-minute window per endpoint group plus
    a one-second burst cap shared by the group.
    """

    GROUP_LIMITS: Dict[str, int] = {
        "read": 120,
        "write": 30,
        "generate": 5,
    }

    def __init__(self, requests_per_minute: int = 60, burst_limit: int = 10) -> None:
        self.requests_per_minute = requests_per_minute
        self.burst_limit = burst_limit
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def _limit_for(self, group: str) -> int:
        return self.GROUP_LIMITS.get(group, self.requests_per_minute)

    def _prune(self, hits: Deque[float], now: float) -> None:
        while hits and hits[0] <= now - WINDOW_SECONDS:
            hits.popleft()

    def check(self, client_id: str, group: str = "read") -> bool:
        """Record a request; ``False`` means it must be rejected."""
        now = time.monotonic()
        with self._lock:
            hits = self._hits[f"{client_id}:{group}"]
            self._prune(hits, now)
            in_burst = sum(1 for t in reversed(hits) if t > now - BURST_SECONDS)
            if len(hits) >= self._limit_for(group) or in_burst >= self.burst_limit:
                return False
            hits.append(now)
            return True

    def get_remaining(self, client_id: str, group: str = "read") -> int:
        now = time.monotonic()
        with self._lock:
            hits = self._hits.get(f"{client_id}:{group}")
            if hits is None:
                return self._limit_for(group)
            self._prune(hits, now)
            return max(0, self._limit_for(group) - len(hits))


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------

_token_auth: Optional[TokenAuth] = None
_rate_limiter: Optional[RateLimiter] = None
_auth_disabled: bool = os.getenv("BLOGSMITH_AUTH_DISABLED", "").lower() in ("true", "1", "yes")


def init_auth(token_auth: Optional[TokenAuth] = None, rate_limiter: Optional[RateLimiter] = None) -> None:
    """Install the registry and limiter used by the dependencies below."""
    global _token_auth, _rate_limiter  # noqa: PLW0603
    _token_auth = token_auth or TokenAuth()
    _rate_limiter = rate_limiter or RateLimiter()


def _client_id(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    return request.client.host if request.client else "unknown"


def _bearer(request: Request) -> str:
    scheme, _, value = request.headers.get("Authorization", "").partition(" ")
    return value.strip() if scheme == "Bearer" else ""


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


async def require_user(request: Request) -> str:
    """Resolve the calling user id from the bearer token (401 otherwise)."""
    if _auth_disabled:
        return request.headers.get("X-User-ID") or DEV_USER

    token = _bearer(request)
    if not token:
        raise _unauthorized("Authentication required. Use: Authorization: Bearer <token>")
    if _token_auth is None:
        raise HTTPException(status_code=500, detail="Auth subsystem not initialized")
    info = _token_auth.validate_token(token)
    if info is None:
        raise _unauthorized("Invalid authentication token")
    return info.user_id


def verify_cron_request(request: Request, secret: Optional[str] = None) -> bool:
    """True when the bearer token equals the configured cron secret."""
    expected = CRON_SECRET if secret is None else secret
    presented = _bearer(request)
    return bool(expected) and bool(presented) and secrets.compare_digest(presented, expected)


async def require_cron(request: Request) -> None:
    if not verify_cron_request(request):
        logger.warning("Rejected cron call from %s", _client_id(request))
        raise HTTPException(status_code=401, detail="Unauthorized")


def _enforce(request: Request, group: str, retry_after: int) -> None:
    if _auth_disabled or _rate_limiter is None:
        return
    client = _client_id(request)
    if _rate_limiter.check(client, group):
        return
    raise HTTPException(
        status_code=429,
        detail=f"Rate limit exceeded for {group} requests. Try again shortly.",
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Remaining": str(_rate_limiter.get_remaining(client, group)),
        },
    )


async def rate_limit(request: Request) -> None:
    _enforce(request, "read", 10)


async def rate_limit_strict(request: Request) -> None:
    _enforce(request, "write", 15)


async def rate_limit_generate(request: Request) -> None:
    _enforce(request, "generate", 30)


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class SecurityMiddleware(BaseHTTPMiddleware):
    """Security headers, request ids and one log line per request."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            response = JSONResponse({"detail": "Internal server error"}, status_code=500)

        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers["X-Request-ID"] = request.headers.get("X-Request-ID") or secrets.token_hex(8)

        logger.info(
            "%s %s -> %d in %.0fms (%s)",
            request.method, request.url.path, response.status_code,
            (time.monotonic() - started) * 1000, _client_id(request),
        )
        return response


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m blogsmith.auth", description="Manage Blogsmith API tokens")
    sub = parser.add_subparsers(dest="command")
    p_gen = sub.add_parser("generate", help="Issue a token for a user")
    p_gen.add_argument("--user", required=True)
    p_gen.add_argument("--expires-days", type=int, default=None)
    sub.add_parser("list", help="Show live tokens")
    p_rev = sub.add_parser("revoke", help="Revoke one token or all tokens of a user")
    p_rev.add_argument("--user", default=None)
    p_rev.add_argument("--token", default=None)
    p_ver = sub.add_parser("verify", help="Check a token")
    p_ver.add_argument("--token", required=True)

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    registry = TokenAuth()
    if args.command == "generate":
        print(registry.generate_token(args.user, expires_days=args.expires_days))
        print("Store this token now; it cannot be shown again.", file=sys.stderr)
        return 0
    if args.command == "list":
        print(json.dumps([asdict(t) for t in registry.list_tokens()], indent=2))
        return 0
    if args.command == "revoke":
        if not (args.user or args.token):
            parser.error("revoke needs --user or --token")
        revoked = registry.revoke_token(token=args.token, user_id=args.user)
        print("revoked" if revoked else "not found")
        return 0 if revoked else 1
    info = registry.validate_token(args.token)
    print(f"valid: user={info.user_id}" if info else "invalid or expired")
    return 0 if info else 1


if __name__ == "__main__":
    sys.exit(main())
