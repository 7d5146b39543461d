"""
Per-user JSON persistence: articles, CTA templates and stored credentials.

Layout under the data directory::

    users/<user_id>/articles.json
    users/<user_id>/cta_templates.json
    users/<user_id>/keys.json

Every write goes through :func:`blogsmith.utils.save_json` (temp file then
replace). A process-wide lock serializes read-modify-write cycles.
"""

from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from blogsmith.config import DATA_DIR, STORED_KEY_NAMES, ProviderCredentials
from blogsmith.errors import ArticleNotFoundError, ValidationError
from blogsmith.models import CTA, ArticleStatus, StoredArticle, to_snake
from blogsmith.utils import load_json, now_iso, parse_iso, save_json

logger = logging.getLogger("blogsmith.store")

_USER_ID_RE = re.compile(r"^[A-Za-z0-9_.@-]{1,128}$")
_PROTECTED_FIELDS = {"id", "user_id", "created_at"}
_VALID_STATUSES = {s.value for s in ArticleStatus}

_lock = threading.RLock()


def _user_dir(data_dir: Path, user_id: str) -> Path:
    if not user_id or not _USER_ID_RE.match(user_id) or user_id in (".", ".."):
        raise ValidationError(f"Invalid user id: {user_id!r}")
    return data_dir / "users" / user_id


def _validate_status(status: str) -> None:
    if status not in _VALID_STATUSES:
        raise ValidationError(
            f"Invalid status {status!r}. Must be one of: {', '.join(sorted(_VALID_STATUSES))}"
        )


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------


class ArticleStore:
    """Saved articles, one JSON list per user."""

    FILENAME = "articles.json"

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        self._data_dir = Path(data_dir) if data_dir else DATA_DIR

    def _path(self, user_id: str) -> Path:
        return _user_dir(self._data_dir, user_id) / self.FILENAME

    def _load(self, user_id: str) -> List[StoredArticle]:
        return [StoredArticle.from_dict(a) for a in load_json(self._path(user_id), [])]

    def _save(self, user_id: str, articles: List[StoredArticle]) -> None:
        save_json(self._path(user_id), [a.to_dict() for a in articles])

    def save_article(self, user_id: str, article: Union[StoredArticle, Mapping[str, Any]]) -> StoredArticle:
        """
        Persist a new article for *user_id*.

        Args:
            user_id: Owner of the article.
            article: A StoredArticle or a camelCase/snake_case dict.

        Returns:
            The stored article with id and timestamps assigned.
        """
        if not isinstance(article, StoredArticle):
            data = {k: v for k, v in dict(article).items() if to_snake(k) not in _PROTECTED_FIELDS}
            if not data.get("title"):
                raise ValidationError("title is required")
            article = StoredArticle.from_dict({**data, "user_id": user_id})
        _validate_status(article.status)
        article.user_id = user_id
        now = now_iso()
        article.created_at = article.created_at or now
        article.updated_at = now

        with _lock:
            articles = self._load(user_id)
            articles.append(article)
            self._save(user_id, articles)
        logger.info("Saved article %s for %s: %s", article.id[:8], user_id, article.title[:60])
        return article

    def list_articles(self, user_id: str) -> List[StoredArticle]:
        """All of a user's articles, newest first."""
        return sorted(self._load(user_id), key=lambda a: a.created_at, reverse=True)

    def get_article(self, user_id: str, article_id: str) -> StoredArticle:
        """
        Raises:
            ArticleNotFoundError: If the user has no article with this id.
        """
        for article in self._load(user_id):
            if article.id == article_id:
                return article
        raise ArticleNotFoundError(f"Article not found: {article_id}")

    def update_article(self, user_id: str, article_id: str, **updates: Any) -> StoredArticle:
        """
        Apply field updates and stamp ``updated_at``.

        Keys may be snake_case or camelCase. ``id``, ``user_id`` and
        ``created_at`` cannot be changed.
        """
        changes = {to_snake(k): v for k, v in updates.items()}
        if "status" in changes:
            _validate_status(changes["status"])

        with _lock:
            articles = self._load(user_id)
            for article in articles:
                if article.id != article_id:
                    continue
                for key, value in changes.items():
                    if hasattr(article, key) and key not in _PROTECTED_FIELDS:
                        setattr(article, key, value)
                article.updated_at = now_iso()
                self._save(user_id, articles)
                logger.info("Updated article %s: %s", article_id[:8], list(changes.keys()))
                return article
        raise ArticleNotFoundError(f"Article not found: {article_id}")

    def delete_article(self, user_id: str, article_id: str) -> bool:
        """Returns True if removed, False if not found."""
        with _lock:
            articles = self._load(user_id)
            remaining = [a for a in articles if a.id != article_id]
            if len(remaining) == len(articles):
                return False
            self._save(user_id, remaining)
        logger.info("Deleted article %s for %s", article_id[:8], user_id)
        return True

    def schedule_article(
        self,
        user_id: str,
        article_id: str,
        scheduled_at: str,
        now: Optional[datetime] = None,
    ) -> StoredArticle:
        """
        Mark an article ``scheduled`` for a future time.

        Raises:
            ValidationError: If the timestamp is unparseable or not in the future.
        """
        try:
            when = parse_iso(scheduled_at)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid scheduledAt: {scheduled_at!r}") from exc
        if when <= (now or datetime.now(timezone.utc)):
            raise ValidationError("Scheduled date must be in the future")
        return self.update_article(
            user_id, article_id, status=ArticleStatus.SCHEDULED.value, scheduled_at=when.isoformat()
        )

    def unschedule_article(self, user_id: str, article_id: str) -> StoredArticle:
        """Back to draft with ``scheduled_at`` cleared."""
        return self.update_article(
            user_id, article_id, status=ArticleStatus.DRAFT.value, scheduled_at=None
        )

    def mark_published(
        self,
        user_id: str,
        article_id: str,
        post_id: int,
        edit_url: str,
    ) -> StoredArticle:
        return self.update_article(
            user_id,
            article_id,
            status=ArticleStatus.PUBLISHED.value,
            published_at=now_iso(),
            wordpress_post_id=post_id,
            wordpress_edit_url=edit_url,
        )

    def iter_user_ids(self) -> Iterator[str]:
        users_dir = self._data_dir / "users"
        if not users_dir.is_dir():
            return
        for path in sorted(users_dir.iterdir()):
            if (path / self.FILENAME).is_file():
                yield path.name

    def due_scheduled_articles(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """
        ``(user_id, article_id)`` for every scheduled article whose time has come.

        Scans all users; entries with an unparseable ``scheduled_at`` are
        logged and skipped.
        """
        now = now or datetime.now(timezone.utc)
        due: List[Tuple[str, str]] = []
        for user_id in self.iter_user_ids():
            for article in self._load(user_id):
                if article.status != ArticleStatus.SCHEDULED.value or not article.scheduled_at:
                    continue
                try:
                    when = parse_iso(article.scheduled_at)
                except ValueError:
                    logger.warning("Bad scheduledAt on article %s: %r", article.id, article.scheduled_at)
                    continue
                if when <= now:
                    due.append((user_id, article.id))
        return due


# ---------------------------------------------------------------------------
# CTA templates
# ---------------------------------------------------------------------------


class CTATemplateStore:
    """Reusable CTA definitions, one JSON list per user."""

    FILENAME = "cta_templates.json"

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        self._data_dir = Path(data_dir) if data_dir else DATA_DIR

    def _path(self, user_id: str) -> Path:
        return _user_dir(self._data_dir, user_id) / self.FILENAME

    def _records(self, user_id: str) -> List[Dict[str, Any]]:
        return load_json(self._path(user_id), [])

    def save_template(self, user_id: str, cta: CTA) -> CTA:
        now = now_iso()
        record = {**cta.to_dict(), "createdAt": now, "updatedAt": now}
        with _lock:
            records = self._records(user_id)
            records.append(record)
            save_json(self._path(user_id), records)
        logger.info("Saved CTA template %s for %s", cta.id, user_id)
        return cta

    def list_templates(self, user_id: str) -> List[CTA]:
        """Newest first."""
        records = sorted(self._records(user_id), key=lambda r: r.get("createdAt", ""), reverse=True)
        return [CTA.from_dict(r) for r in records]

    def get_template(self, user_id: str, template_id: str) -> CTA:
        for record in self._records(user_id):
            if record.get("id") == template_id:
                return CTA.from_dict(record)
        raise KeyError(f"CTA template not found: {template_id}")

    def update_template(self, user_id: str, template_id: str, updates: Mapping[str, Any]) -> CTA:
        """
        Merge *updates* (camelCase) into a template.

        Raises:
            KeyError: If the template does not exist.
            ValueError: If the merged template is invalid (bad style or position).
        """
        with _lock:
            records = self._records(user_id)
            for index, record in enumerate(records):
                if record.get("id") != template_id:
                    continue
                merged = {**record, **{k: v for k, v in updates.items() if k not in ("id", "createdAt")}}
                cta = CTA.from_dict(merged)
                records[index] = {
                    **cta.to_dict(),
                    "createdAt": record.get("createdAt", now_iso()),
                    "updatedAt": now_iso(),
                }
                save_json(self._path(user_id), records)
                return cta
        raise KeyError(f"CTA template not found: {template_id}")

    def delete_template(self, user_id: str, template_id: str) -> bool:
        with _lock:
            records = self._records(user_id)
            remaining = [r for r in records if r.get("id") != template_id]
            if len(remaining) == len(records):
                return False
            save_json(self._path(user_id), remaining)
        return True


# ---------------------------------------------------------------------------
# Stored credentials
# ---------------------------------------------------------------------------


class UserKeyStore:
    """A user's own provider keys and WordPress credentials."""

    FILENAME = "keys.json"
    ALLOWED = frozenset(STORED_KEY_NAMES.values())

    def __init__(self, data_dir: Optional[Path] = None) -> None:
        self._data_dir = Path(data_dir) if data_dir else DATA_DIR

    def _path(self, user_id: str) -> Path:
        return _user_dir(self._data_dir, user_id) / self.FILENAME

    def get_keys(self, user_id: str) -> Dict[str, str]:
        raw = load_json(self._path(user_id), {})
        return {k: v for k, v in raw.items() if k in self.ALLOWED and isinstance(v, str)}

    def save_keys(self, user_id: str, updates: Mapping[str, Optional[str]]) -> Dict[str, str]:
        """
        Merge *updates* into the stored keys.

        An empty or null value removes the key. Unknown names are rejected.
        """
        unknown = sorted(set(updates) - self.ALLOWED)
        if unknown:
            raise ValidationError(f"Unknown key names: {', '.join(unknown)}")
        with _lock:
            keys = self.get_keys(user_id)
            for name, value in updates.items():
                if value is None or not str(value).strip():
                    keys.pop(name, None)
                else:
                    keys[name] = str(value).strip()
            save_json(self._path(user_id), keys)
        logger.info("Updated stored keys for %s: %s", user_id, sorted(updates))
        return keys

    def masked_keys(self, user_id: str) -> Dict[str, str]:
        """Stored keys with secrets reduced to their last four characters."""
        out: Dict[str, str] = {}
        for name, value in self.get_keys(user_id).items():
            if name in ("wordpressUrl", "wordpressUsername"):
                out[name] = value
            else:
                out[name] = f"****{value[-4:]}"
        return out

    def credentials_for(
        self, user_id: str, environ: Optional[Mapping[str, str]] = None
    ) -> ProviderCredentials:
        """Effective credentials: stored value or environment, per field."""
        return ProviderCredentials.resolve(self.get_keys(user_id), environ)
