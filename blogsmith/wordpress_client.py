"""
WordPress REST API publish adapter.

Creates or updates one post per stored article through the WP REST API
(application-password Basic auth). Post creation is a minimal call; every
enrichment after it (categories and tags, featured image, SEO plugin
metadata) is best-effort and never fails the publish.

Usage:
    from blogsmith.config import ProviderCredentials
    from blogsmith.wordpress_client import WordPressClient

    async with WordPressClient.from_credentials(ProviderCredentials.from_env()) as wp:
        result = await wp.create_or_update_post(html, seo, topic, status="publish")
        print(result["postId"], result["editUrl"])
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from blogsmith.config import ProviderCredentials
from blogsmith.errors import BlogsmithError
from blogsmith.models import SEOMetadata
from blogsmith.utils import generate_slug, now_iso, parse_iso

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("blogsmith.wordpress_client")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

DEFAULT_TIMEOUT = 30
DEFAULT_CATEGORIES = ["IA", "Blog Automatique"]
USER_AGENT = "Blogsmith/1.0"

_FIRST_IMG_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class WordPressError(BlogsmithError):
    """Base exception for WordPress API errors."""

    def __init__(self, message: str, status_code: int = 0, response_body: str = ""):
        self.status_code = status_code
        self.response_body = response_body
        super().__init__(message)


class AuthenticationError(WordPressError):
    """Raised on 401/403 responses."""
    pass


class NotFoundError(WordPressError):
    """Raised on 404 responses."""
    pass


class RateLimitError(WordPressError):
    """Raised on 429 responses after all retries exhausted."""
    pass


class SiteNotConfiguredError(WordPressError):
    """Raised when URL, username or application password is missing."""
    pass


# ---------------------------------------------------------------------------
# Site configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WordPressSite:
    """Connection details for one WordPress site."""

    url: str
    username: str = ""
    password: str = ""

    @classmethod
    def from_credentials(cls, credentials: ProviderCredentials) -> WordPressSite:
        return cls(
            url=(credentials.wordpress_url or "").strip().rstrip("/"),
            username=(credentials.wordpress_username or "").strip(),
            # Application passwords are displayed with spaces
            password=re.sub(r"\s+", "", credentials.wordpress_password or ""),
        )

    @property
    def api_url(self) -> str:
        """WP REST API v2 base URL."""
        return f"{self.url}/wp-json/wp/v2"

    @property
    def auth_header(self) -> str:
        if not self.username or not self.password:
            return ""
        encoded = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("utf-8")
        return f"Basic {encoded}"

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.username and self.password)

    def edit_url(self, post_id: int) -> str:
        return f"{self.url}/wp-admin/post.php?post={post_id}&action=edit"

    def __repr__(self) -> str:
        configured = "configured" if self.is_configured else "no-creds"
        return f"WordPressSite({self.url!r}, {configured})"


# ---------------------------------------------------------------------------
# Content helpers
# ---------------------------------------------------------------------------


def strip_leading_title(html: str, title: str = "") -> str:
    """Remove the header/h1 block and the article wrapper.

    Themes render the post title themselves, so the generated h1 would show
    twice.
    """
    if not html:
        return html
    cleaned = html
    if title:
        escaped = re.escape(title)
        cleaned = re.sub(
            rf"<header[^>]*>\s*<h1[^>]*>\s*{escaped}\s*</h1>\s*</header>",
            "", cleaned, count=1, flags=re.IGNORECASE,
        )
    cleaned = re.sub(
        r"<header[^>]*>\s*<h1[^>]*>.*?</h1>\s*</header>",
        "", cleaned, count=1, flags=re.IGNORECASE | re.DOTALL,
    )
    cleaned = re.sub(r"<article[^>]*>", "", cleaned, count=1, flags=re.IGNORECASE)
    cleaned = re.sub(r"</article>", "", cleaned, count=1, flags=re.IGNORECASE)
    cleaned = re.sub(r"^\s*<h1[^>]*>.*?</h1>\s*", "", cleaned, count=1, flags=re.IGNORECASE | re.DOTALL)
    return cleaned.strip()


def first_image_url(html: str) -> Optional[str]:
    match = _FIRST_IMG_RE.search(html or "")
    return match.group(1) if match else None


def resolve_post_status(
    status: str,
    scheduled_iso: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[str, Optional[str]]:
    """Map an article status to a WP post status and optional GMT date.

    A scheduled timestamp in the future always yields ``future``.
    """
    now = now or datetime.now(timezone.utc)
    if scheduled_iso:
        when = parse_iso(scheduled_iso).astimezone(timezone.utc)
        if when > now:
            return "future", when.strftime("%Y-%m-%dT%H:%M:%S")
    status = (status or "publish").lower()
    if status in ("published", "publish", "scheduled", "future"):
        return "publish", None
    return status, None


# ---------------------------------------------------------------------------
# WordPressClient
# ---------------------------------------------------------------------------


class WordPressClient:
    """
    Async WordPress REST API client for a single site.

    Parameters
    ----------
    site : WordPressSite
        Site URL and application-password credentials.
    timeout : int
        Request timeout in seconds. Default 30.
    """

    def __init__(self, site: WordPressSite, timeout: int = DEFAULT_TIMEOUT):
        self.site = site
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_credentials(cls, credentials: ProviderCredentials, timeout: int = DEFAULT_TIMEOUT) -> WordPressClient:
        return cls(WordPressSite.from_credentials(credentials), timeout=timeout)

    # -- Session management -------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
            if self.site.auth_header:
                headers["Authorization"] = self.site.auth_header
            self._session = aiohttp.ClientSession(
                headers=headers,
                connector=aiohttp.TCPConnector(limit=10, ttl_dns_cache=300),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # -- Core HTTP methods with retry ---------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_data: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any, Dict[str, str]]:
        """
        Make an HTTP request with exponential backoff retry on transient errors.

        Returns
        -------
        tuple of (status_code, response_json_or_text, response_headers)

        Raises
        ------
        SiteNotConfiguredError
            When URL or credentials are missing.
        AuthenticationError
            On 401 or 403 responses.
        NotFoundError
            On 404 responses.
        RateLimitError
            On 429 after all retries exhausted.
        WordPressError
            On other non-2xx responses after retries, or network failure.
        """
        if not self.site.is_configured:
            raise SiteNotConfiguredError(
                "WordPress is not configured: URL, username and application password are required"
            )

        session = await self._get_session()
        last_error: Optional[Exception] = None

        for attempt in range(MAX_RETRIES + 1):
            try:
                logger.debug("API %s %s (attempt %d/%d)", method.upper(), url, attempt + 1, MAX_RETRIES + 1)

                kwargs: Dict[str, Any] = {}
                if json_data is not None:
                    kwargs["json"] = json_data
                if data is not None:
                    kwargs["data"] = data
                if headers is not None:
                    kwargs["headers"] = headers
                if params is not None:
                    kwargs["params"] = {k: v for k, v in params.items() if v is not None}

                async with session.request(method, url, **kwargs) as resp:
                    status = resp.status
                    resp_headers = dict(resp.headers)

                    try:
                        body = await resp.json(content_type=None)
                    except (json.JSONDecodeError, ValueError):
                        body = await resp.text()

                    if status in (401, 403):
                        raise AuthenticationError(
                            f"Authentication failed for {self.site.url}: HTTP {status}",
                            status_code=status,
                            response_body=str(body),
                        )

                    if status == 404:
                        raise NotFoundError(
                            f"Resource not found: {url}",
                            status_code=404,
                            response_body=str(body),
                        )

                    if status in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                        delay = RETRY_BASE_DELAY * (2 ** attempt)
                        retry_after = resp_headers.get("Retry-After")
                        if retry_after:
                            try:
                                delay = max(delay, float(retry_after))
                            except ValueError:
                                pass
                        logger.warning("Retryable error %d from %s, retrying in %.1fs", status, url, delay)
                        await asyncio.sleep(delay)
                        continue

                    if status == 429:
                        raise RateLimitError(
                            f"Rate limited by {self.site.url} after {MAX_RETRIES} retries",
                            status_code=429,
                            response_body=str(body),
                        )

                    if status >= 400:
                        error_msg = body
                        if isinstance(body, dict):
                            error_msg = body.get("message", str(body))
                        raise WordPressError(
                            f"HTTP {status} from {self.site.url}: {error_msg}",
                            status_code=status,
                            response_body=str(body),
                        )

                    return status, body, resp_headers

            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = exc
                if attempt < MAX_RETRIES:
                    delay = RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Network error on %s (%s), retrying in %.1fs: %s",
                        url, type(exc).__name__, delay, exc,
                    )
                    await asyncio.sleep(delay)
                else:
                    raise WordPressError(
                        f"Network error after {MAX_RETRIES} retries for {self.site.url}: {exc}"
                    ) from exc

        raise WordPressError(f"Request failed after {MAX_RETRIES} retries: {last_error}")

    async def _get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET request to a WP REST API v2 endpoint."""
        _, body, _ = await self._request("GET", f"{self.site.api_url}/{endpoint}", params=params)
        return body

    async def _post(
        self,
        endpoint: str,
        json_data: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        """POST request to a WP REST API v2 endpoint."""
        _, body, _ = await self._request(
            "POST", f"{self.site.api_url}/{endpoint}", json_data=json_data, data=data, headers=headers
        )
        return body

    # -----------------------------------------------------------------------
    # Posts
    # -----------------------------------------------------------------------

    async def create_post(
        self,
        title: str,
        content: str,
        status: str = "draft",
        slug: Optional[str] = None,
        excerpt: Optional[str] = None,
        date_gmt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a post with a minimal payload.

        Only title, content, status, slug, excerpt (and the GMT date for
        future posts) are sent, so accounts without rights on meta or
        taxonomies can still publish.
        """
        payload: Dict[str, Any] = {"title": title, "content": content, "status": status}
        if slug:
            payload["slug"] = slug
        if excerpt:
            payload["excerpt"] = excerpt
        if date_gmt:
            payload["date_gmt"] = date_gmt

        result = await self._post("posts", json_data=payload)
        logger.info("Created post %s on %s: %s (status=%s)", result.get("id"), self.site.url, title[:60], status)
        return result

    async def update_post(self, post_id: int, **kwargs) -> Dict[str, Any]:
        """Update fields of an existing post."""
        result = await self._post(f"posts/{post_id}", json_data=kwargs)
        logger.info("Updated post %d on %s: fields=%s", post_id, self.site.url, list(kwargs.keys()))
        return result

    async def update_status(self, post_id: int, status: str, scheduled_iso: Optional[str] = None) -> Dict[str, Any]:
        """
        Change only the status (and date when moving to a future state).

        Repeating the same call leaves the remote post unchanged.
        """
        wp_status, date_gmt = resolve_post_status(status, scheduled_iso)
        fields: Dict[str, Any] = {"status": wp_status}
        if date_gmt:
            fields["date_gmt"] = date_gmt
        return await self.update_post(post_id, **fields)

    # -----------------------------------------------------------------------
    # Taxonomies
    # -----------------------------------------------------------------------

    async def ensure_term(self, taxonomy: str, name: str) -> int:
        """Look up a category or tag by name; create it when absent."""
        found = await self._get(taxonomy, params={"search": name})
        if isinstance(found, list) and found:
            return int(found[0]["id"])
        created = await self._post(taxonomy, json_data={"name": name, "slug": generate_slug(name)})
        logger.debug("Created %s '%s' (id=%s)", taxonomy, name, created.get("id"))
        return int(created["id"])

    async def resolve_terms(self, taxonomy: str, names: Sequence[str]) -> List[int]:
        """Resolve each name independently; failures are skipped."""
        ids: List[int] = []
        for name in names:
            if not name or not name.strip():
                continue
            try:
                ids.append(await self.ensure_term(taxonomy, name.strip()))
            except (WordPressError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Could not handle %s '%s': %s", taxonomy, name, exc)
        return ids

    # -----------------------------------------------------------------------
    # Media
    # -----------------------------------------------------------------------

    async def _download(self, url: str) -> bytes:
        """Fetch image bytes without sending the site's credentials."""
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.get(url) as resp:
                if resp.status >= 400:
                    raise WordPressError(f"Image download failed: HTTP {resp.status}", status_code=resp.status)
                return await resp.read()

    async def upload_media(
        self,
        file_data: bytes,
        filename: str,
        mime_type: str = "image/jpeg",
        alt_text: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upload raw bytes to the media library, then set alt text (best-effort)."""
        result = await self._post(
            "media",
            data=file_data,
            headers={
                "Content-Type": mime_type,
                "Content-Disposition": f'attachment; filename="{filename}"',
            },
        )
        media_id = result.get("id")
        logger.info("Uploaded media %s: id=%s, url=%s", filename, media_id, result.get("source_url", ""))

        if alt_text and media_id:
            try:
                await self._post(f"media/{media_id}", json_data={"alt_text": alt_text})
            except WordPressError as exc:
                logger.warning("Failed to set alt text on media %s: %s", media_id, exc)
        return result

    async def set_featured_image_from_url(self, post_id: int, image_url: str, alt: str = "") -> bool:
        """Download, upload and attach an image as the post's featured media."""
        try:
            image = await self._download(image_url)
            media = await self.upload_media(image, f"cover-{post_id}.jpg", alt_text=alt)
            media_id = media.get("id")
            if not media_id:
                return False
            await self.update_post(post_id, featured_media=media_id)
            logger.info("Set featured image %s on post %d", media_id, post_id)
            return True
        except (WordPressError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Failed to set featured image on post %d: %s", post_id, exc)
            return False

    # -----------------------------------------------------------------------
    # SEO plugins
    # -----------------------------------------------------------------------

    async def set_seo_meta(self, post_id: int, seo: SEOMetadata, topic: str = "") -> Optional[str]:
        """
        Attach Yoast and RankMath metadata.

        Tries the post ``meta`` field, then the RankMath REST endpoint, then
        the direct post meta endpoint; stops at the first that succeeds.

        Returns
        -------
        str or None
            Name of the method that worked, None when all failed.
        """
        focus = seo.keywords[0] if seo.keywords else topic
        yoast = {
            "_yoast_wpseo_title": seo.meta_title,
            "_yoast_wpseo_metadesc": seo.meta_description,
            "_yoast_wpseo_focuskw": focus,
        }
        rank_math = {
            "rank_math_title": seo.meta_title,
            "rank_math_description": seo.meta_description,
            "rank_math_focus_keyword": ",".join(seo.keywords) or focus,
        }

        attempts = [
            ("post-meta", f"{self.site.api_url}/posts/{post_id}", {"meta": {**yoast, **rank_math}}),
            (
                "rankmath-endpoint",
                f"{self.site.url}/wp-json/rankmath/v1/updateMeta",
                {"objectType": "post", "objectID": post_id, "meta": rank_math},
            ),
            ("meta-endpoint", f"{self.site.api_url}/posts/{post_id}/meta", yoast),
        ]
        for name, url, payload in attempts:
            try:
                await self._request("POST", url, json_data=payload)
                logger.info("SEO metadata set on post %d via %s", post_id, name)
                return name
            except WordPressError as exc:
                logger.warning("SEO metadata via %s failed for post %d: %s", name, post_id, exc)
        return None

    # -----------------------------------------------------------------------
    # High-level publish
    # -----------------------------------------------------------------------

    async def create_or_update_post(
        self,
        content: str,
        seo: SEOMetadata,
        topic: str,
        status: str = "publish",
        scheduled_iso: Optional[str] = None,
        post_id: Optional[int] = None,
        featured_image_url: Optional[str] = None,
        word_count: int = 0,
    ) -> Dict[str, Any]:
        """
        Publish an article, updating the existing post when one is known.

        Parameters
        ----------
        content : str
            Article HTML (the wrapper and h1 are stripped before sending).
        seo : SEOMetadata
            Title, excerpt, slug and keywords.
        topic : str
            Source topic, used as focus keyword fallback.
        status : str
            draft, publish/published or future/scheduled.
        scheduled_iso : str, optional
            Publication time; a future value makes the post ``future``.
        post_id : int, optional
            Existing post. Only its status is updated.
        featured_image_url : str, optional
            Featured image; defaults to the first image in the content.

        Returns
        -------
        dict
            ``{"postId", "editUrl"}``.

        Raises
        ------
        WordPressError
            When the core create or status update fails.
        """
        if post_id:
            await self.update_status(post_id, status, scheduled_iso)
            return {"postId": post_id, "editUrl": self.site.edit_url(post_id)}

        wp_status, date_gmt = resolve_post_status(status, scheduled_iso)
        post = await self.create_post(
            title=seo.meta_title or topic,
            content=strip_leading_title(content, seo.meta_title),
            status=wp_status,
            slug=seo.slug or None,
            excerpt=seo.meta_description or None,
            date_gmt=date_gmt,
        )
        new_id = int(post["id"])

        try:
            categories = await self.resolve_terms("categories", DEFAULT_CATEGORIES)
            tags = await self.resolve_terms("tags", seo.keywords)
            await self.update_post(
                new_id,
                categories=categories,
                tags=tags,
                meta={
                    "generated_by": USER_AGENT,
                    "generation_date": now_iso(),
                    "source_topic": topic,
                    "word_count": str(word_count),
                },
            )
        except WordPressError as exc:
            logger.warning("Created post %d but failed to attach taxonomies: %s", new_id, exc)

        image_url = featured_image_url or first_image_url(content)
        if image_url:
            await self.set_featured_image_from_url(new_id, image_url, alt=seo.meta_title)

        await self.set_seo_meta(new_id, seo, topic)
        return {"postId": new_id, "editUrl": self.site.edit_url(new_id)}

    # -----------------------------------------------------------------------
    # Diagnostics
    # -----------------------------------------------------------------------

    async def test_connection(self) -> Dict[str, Any]:
        """Authenticate against ``/users/me``; never raises."""
        try:
            user = await self._get("users/me")
        except SiteNotConfiguredError:
            return {"success": False, "message": "Missing WordPress credentials"}
        except AuthenticationError as exc:
            if exc.status_code == 403:
                message = "Access forbidden: Your user account doesn't have sufficient permissions to create posts."
            else:
                message = "Authentication failed: Invalid username or application password. Please check your credentials."
            return {"success": False, "message": message}
        except NotFoundError:
            return {
                "success": False,
                "message": "WordPress site not found or REST API is disabled. Please check your site URL.",
            }
        except WordPressError as exc:
            return {"success": False, "message": f"Connection failed: {exc}"}

        if not isinstance(user, dict):
            return {"success": False, "message": "Unable to authenticate with WordPress"}
        return {
            "success": True,
            "message": f"Connection successful! Authenticated as: {user.get('name')}",
            "user": {
                "id": user.get("id"),
                "name": user.get("name"),
                "email": user.get("email"),
                "roles": user.get("roles"),
            },
        }

    async def get_post_stats(self) -> Dict[str, int]:
        """Total, draft and published counts from ``X-WP-Total``."""
        url = f"{self.site.api_url}/posts"
        counts: Dict[str, int] = {}
        try:
            for key, status in (("totalPosts", None), ("draftPosts", "draft"), ("publishedPosts", "publish")):
                _, _, headers = await self._request("GET", url, params={"per_page": 1, "status": status})
                counts[key] = int(headers.get("X-WP-Total") or headers.get("x-wp-total") or 0)
        except (WordPressError, ValueError) as exc:
            logger.error("Failed to get post stats: %s", exc)
            return {"totalPosts": 0, "draftPosts": 0, "publishedPosts": 0}
        return counts

    def __repr__(self) -> str:
        return f"WordPressClient({self.site!r})"
