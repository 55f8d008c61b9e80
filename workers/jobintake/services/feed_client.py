from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Any

import feedparser  # type: ignore[import-untyped]
import httpx

from jobintake.core.errors import UpstreamFetchError
from jobintake.core.text import html_to_text
from jobintake.core.urls import first_http_url, is_http_url, looks_like_google_news_wrapper

logger = logging.getLogger(__name__)

FEED_USER_AGENT = "jobintake-rss/1.0"
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml;q=0.9, */*;q=0.8"
SUMMARY_MAX_CHARS = 3000


@dataclass(slots=True)
class FeedItem:
    title: str
    link: str
    summary: str


@dataclass(slots=True)
class FeedDocument:
    content: bytes
    headers: dict[str, str]


@dataclass(slots=True)
class ResolverBudget:
    remaining: int
    timeout_seconds: float


async def fetch_feed(client: httpx.AsyncClient, feed_url: str) -> FeedDocument:
    try:
        response = await client.get(
            feed_url,
            headers={"User-Agent": FEED_USER_AGENT, "Accept": FEED_ACCEPT},
            follow_redirects=True,
        )
    except httpx.HTTPError as exc:
        raise UpstreamFetchError(f"feed fetch failed for {feed_url}: {exc}") from exc
    if not response.is_success:
        raise UpstreamFetchError(
            f"feed fetch failed for {feed_url}: {response.status_code}",
            status_code=response.status_code,
        )
    return FeedDocument(
        content=response.content,
        headers={key.lower(): value for key, value in response.headers.items()},
    )


def parse_feed_items(xml: bytes | str, headers: dict[str, str] | None = None) -> list[FeedItem]:
    """Extract RSS ``<item>`` and Atom ``<entry>`` records from a feed document.

    Raw bytes are decoded by feedparser from the HTTP ``content-type`` charset
    or the XML declaration.
    """
    content = xml.encode("utf-8") if isinstance(xml, str) else xml
    parsed = feedparser.parse(io.BytesIO(content), response_headers=headers)
    items: list[FeedItem] = []
    for entry in parsed.entries:
        item = FeedItem(
            title=str(entry.get("title") or "").strip(),
            link=_entry_link(entry).strip(),
            summary=html_to_text(_entry_summary(entry))[:SUMMARY_MAX_CHARS],
        )
        if item.title or item.link or item.summary:
            items.append(item)
    return items


async def resolve_google_news_link(client: httpx.AsyncClient, url: str, budget: ResolverBudget) -> str:
    """Follow a news wrapper link to its publisher URL; empty string when it cannot be resolved."""
    if budget.remaining <= 0:
        return ""
    budget.remaining -= 1

    try:
        response = await client.get(
            url,
            headers={"User-Agent": FEED_USER_AGENT},
            follow_redirects=True,
            timeout=budget.timeout_seconds,
        )
    except httpx.HTTPError as exc:
        logger.debug("wrapper resolution failed url=%s: %s", url, exc)
        return ""

    final_url = str(response.url)
    if is_http_url(final_url) and not looks_like_google_news_wrapper(final_url):
        return final_url
    extracted = first_http_url(response.text)
    if is_http_url(extracted) and not looks_like_google_news_wrapper(extracted):
        return extracted
    return ""


def _entry_link(entry: Any) -> str:
    links = [
        link for link in entry.get("links") or [] if link.get("href") and link.get("rel") != "enclosure"
    ]
    for link in links:
        if link.get("rel", "alternate") == "alternate":
            return str(link["href"])
    if links:
        return str(links[0]["href"])
    return str(entry.get("link") or "")


def _entry_summary(entry: Any) -> str:
    summary = entry.get("summary")
    if summary:
        return str(summary)
    for content in entry.get("content") or []:
        value = content.get("value")
        if value:
            return str(value)
    return ""
