"""
Scheduled publishing.

:func:`publish_article` is the shared publish path (used by the publish
endpoint and by the sweep). :func:`publish_due` is the periodic sweep: it
publishes every stored article whose ``scheduledAt`` has passed, one entry
at a time, recording a result for each.

CLI:
    python -m blogsmith.scheduler run
    python -m blogsmith.scheduler run --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from blogsmith.config import ProviderCredentials
from blogsmith.errors import ArticleNotFoundError, ValidationError
from blogsmith.models import ArticleStatus, SEOMetadata, StoredArticle
from blogsmith.store import ArticleStore, UserKeyStore
from blogsmith.utils import generate_slug, parse_iso, strip_html, truncate
from blogsmith.wordpress_client import WordPressClient

logger = logging.getLogger("blogsmith.scheduler")

ClientFactory = Callable[[ProviderCredentials], WordPressClient]


def seo_for_article(article: StoredArticle) -> SEOMetadata:
    """Stored SEO metadata, with title/description/slug derived when missing."""
    seo = SEOMetadata.from_dict(article.seo_metadata or {})
    if not seo.meta_title:
        seo.meta_title = truncate(article.title, 60)
    if not seo.meta_description:
        seo.meta_description = truncate(strip_html(article.content), 160)
    if not seo.slug:
        seo.slug = generate_slug(article.title)
    return seo


async def publish_article(
    store: ArticleStore,
    client: WordPressClient,
    user_id: str,
    article: StoredArticle,
    scheduled_at: Optional[str] = None,
    now: Optional[datetime] = None,
) -> StoredArticle:
    """
    Create or update the WordPress post for *article* and persist the outcome.

    Parameters
    ----------
    store : ArticleStore
        Where the article's new status is saved.
    client : WordPressClient
        Client for the owner's site.
    user_id : str
        Article owner.
    article : StoredArticle
        The article. A known ``wordpress_post_id`` means only the remote
        status is updated.
    scheduled_at : str, optional
        ISO timestamp. A future value makes the post ``future`` remotely and
        ``scheduled`` locally; anything else publishes now.

    Returns
    -------
    StoredArticle
        The updated record.

    Raises
    ------
    ValidationError
        Unparseable ``scheduled_at``.
    WordPressError
        The core create or status update failed.
    """
    now = now or datetime.now(timezone.utc)
    future: Optional[datetime] = None
    if scheduled_at:
        try:
            when = parse_iso(scheduled_at)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Invalid scheduledAt: {scheduled_at!r}") from exc
        if when > now:
            future = when

    result = await client.create_or_update_post(
        article.content,
        seo_for_article(article),
        article.topic or article.title,
        status="future" if future else "publish",
        scheduled_iso=future.isoformat() if future else None,
        post_id=article.wordpress_post_id,
        word_count=article.word_count,
    )

    if future:
        logger.info("Article %s scheduled on WordPress for %s (post %s)",
                    article.id[:8], future.isoformat(), result["postId"])
        return store.update_article(
            user_id,
            article.id,
            status=ArticleStatus.SCHEDULED.value,
            scheduled_at=future.isoformat(),
            wordpress_post_id=result["postId"],
            wordpress_edit_url=result["editUrl"],
        )
    logger.info("Article %s published (post %s)", article.id[:8], result["postId"])
    return store.mark_published(user_id, article.id, result["postId"], result["editUrl"])


async def publish_due(
    store: ArticleStore,
    key_store: UserKeyStore,
    now: Optional[datetime] = None,
    client_factory: ClientFactory = WordPressClient.from_credentials,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """
    Publish every scheduled article whose time has come.

    Entries are independent: a missing article, missing credentials or a
    WordPress failure is recorded for that entry and the sweep moves on.

    Returns
    -------
    dict
        ``{"processed", "published", "skipped", "failed", "results"}`` where
        each result is ``{"articleId", "userId", "status", "reason"?}``.
    """
    now = now or datetime.now(timezone.utc)
    due = store.due_scheduled_articles(now)
    logger.info("Publish sweep: %d due article(s)%s", len(due), " (dry run)" if dry_run else "")

    results: List[Dict[str, Any]] = []
    counts = {"published": 0, "skipped": 0, "failed": 0}

    def record(user_id: str, article_id: str, status: str, reason: str = "") -> None:
        entry = {"articleId": article_id, "userId": user_id, "status": status}
        if reason:
            entry["reason"] = reason
        results.append(entry)
        if status in counts:
            counts[status] += 1

    for user_id, article_id in due:
        try:
            article = store.get_article(user_id, article_id)
        except ArticleNotFoundError:
            record(user_id, article_id, "skipped", "Article not found")
            continue

        credentials = key_store.credentials_for(user_id)
        if not credentials.has_wordpress:
            logger.warning("Skipping article %s: no WordPress credentials for %s", article_id[:8], user_id)
            record(user_id, article_id, "skipped", "WordPress credentials missing")
            continue

        if dry_run:
            record(user_id, article_id, "due")
            continue

        client = client_factory(credentials)
        try:
            await publish_article(store, client, user_id, article, now=now)
            record(user_id, article_id, "published")
        except Exception as exc:
            logger.error("Failed to publish article %s for %s: %s", article_id[:8], user_id, exc)
            record(user_id, article_id, "failed", str(exc) or type(exc).__name__)
        finally:
            await client.close()

    summary = {"processed": len(due), **counts, "results": results}
    logger.info(
        "Publish sweep done: %d processed, %d published, %d skipped, %d failed",
        summary["processed"], counts["published"], counts["skipped"], counts["failed"],
    )
    return summary


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    parser = argparse.ArgumentParser(
        prog="python -m blogsmith.scheduler",
        description="Publish scheduled articles whose time has come",
    )
    sub = parser.add_subparsers(dest="command")
    p_run = sub.add_parser("run", help="Run one publish sweep")
    p_run.add_argument("--dry-run", action="store_true", help="List due articles without publishing")
    p_run.add_argument("--data-dir", default=None, help="Override BLOGSMITH_DATA_DIR")

    args = parser.parse_args(argv)
    if args.command != "run":
        parser.print_help()
        return 1

    data_dir = Path(args.data_dir) if args.data_dir else None
    summary = asyncio.run(
        publish_due(ArticleStore(data_dir), UserKeyStore(data_dir), dry_run=args.dry_run)
    )
    print(json.dumps(summary, indent=2))
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
