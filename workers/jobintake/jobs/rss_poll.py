from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

import httpx
from opentelemetry import trace

from jobintake.core.config import Settings, get_settings
from jobintake.core.contracts import (
    Ingest,
    IngestRequest,
    IngestResult,
    NormalizeURL,
    call_ingest,
    clamp_int,
)
from jobintake.core.errors import ConfigurationError, UpstreamFetchError
from jobintake.core.telemetry import poll_run_span, record_summary
from jobintake.core.text import contains_any_keyword, parse_keyword_list
from jobintake.core.urls import extract_urls, host_from_url, is_http_url, unique_texts
from jobintake.jobs.aggregate import PollRun
from jobintake.jobs.classify import (
    FEED_ALLOWED_SOURCE_DOMAINS,
    ClassificationResult,
    UrlClassifier,
    merge_count_map,
    merge_reason_buckets,
    new_reason_buckets,
    push_rejected_sample,
    push_unique_limited,
)
from jobintake.jobs.quota import QuotaEnforcer
from jobintake.services.feed_client import (
    FeedItem,
    ResolverBudget,
    fetch_feed,
    parse_feed_items,
    resolve_google_news_link,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

EMAIL_TEXT_MAX_CHARS = 6000
EMAIL_SUBJECT_MAX_CHARS = 300
_FEED_LIST_SPLIT_RE = re.compile(r"[\s,]+")


@dataclass(slots=True)
class FeedSummary:
    feed_url: str
    items_listed: int = 0
    processed: int = 0
    reason_buckets: dict[str, int] = field(default_factory=new_reason_buckets)
    unsupported_domain_by_host: dict[str, int] = field(default_factory=dict)
    rejected_url_samples: list[dict[str, str]] = field(default_factory=list)
    sample_candidates: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "feed_url": self.feed_url,
            "items_listed": self.items_listed,
            "processed": self.processed,
            "reason_buckets": dict(self.reason_buckets),
            "unsupported_domain_by_host": dict(self.unsupported_domain_by_host),
            "rejected_url_samples": list(self.rejected_url_samples),
            "sample_candidates": list(self.sample_candidates),
        }


def parse_feed_urls(raw: str | Iterable[object] | None) -> list[str]:
    if raw is None:
        return []
    parts: Iterable[object] = _FEED_LIST_SPLIT_RE.split(raw) if isinstance(raw, str) else raw
    return [url for url in unique_texts(parts) if is_http_url(url)]


async def diagnose_rss_feeds(**kwargs: Any) -> dict[str, Any]:
    """Run the feed pipeline end to end without dispatching anything."""
    kwargs.setdefault("ingest_enabled", False)
    return await poll_rss_feeds_and_ingest(**{**kwargs, "mode": "diagnostics"})


async def poll_rss_feeds_and_ingest(
    *,
    normalize: NormalizeURL,
    ingest: Ingest | None = None,
    feeds: str | Iterable[str] | None = None,
    max_per_run: int | None = None,
    allow_keywords: str | Iterable[str] | None = None,
    block_keywords: str | Iterable[str] | None = None,
    max_jobs_per_item: int | None = None,
    max_jobs_per_poll: int | None = None,
    sample_limit: int = 5,
    max_candidate_attempts: int = 12,
    max_resolve_requests: int | None = None,
    resolve_timeout_ms: int | None = None,
    ingest_enabled: bool = True,
    mode: str = "poll",
    client: httpx.AsyncClient | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Poll every configured feed once and dispatch the job links it carries.

    Feeds keep no cursor or ingest log; repeated runs re-offer the same items
    and rely on the downstream store to upsert. ``max_per_run`` bounds the
    number of items looked at across all feeds.
    """
    if not callable(normalize):
        raise ConfigurationError("normalize callback is required")
    if ingest_enabled and not callable(ingest):
        raise ConfigurationError("ingest callback is required")
    settings = settings or get_settings()

    poller = _FeedPoller(
        ingest=ingest if ingest_enabled else None,
        normalize=normalize,
        feeds=parse_feed_urls(feeds if feeds is not None else settings.rss_feeds),
        max_items=clamp_int(max_per_run or settings.rss_max_per_run, default=25, minimum=1, maximum=200),
        allow=parse_keyword_list(allow_keywords if allow_keywords is not None else settings.rss_allow_keywords),
        block=parse_keyword_list(block_keywords if block_keywords is not None else settings.rss_block_keywords),
        quota=QuotaEnforcer(
            per_item_cap=clamp_int(
                max_jobs_per_item or settings.max_jobs_per_email, default=3, minimum=1, maximum=50
            ),
            per_run_cap=clamp_int(
                max_jobs_per_poll or settings.max_jobs_per_poll, default=10, minimum=1, maximum=500
            ),
        ),
        sample_limit=clamp_int(sample_limit, default=5, minimum=1, maximum=20),
        max_candidate_attempts=max_candidate_attempts,
        budget=ResolverBudget(
            remaining=clamp_int(
                max_resolve_requests if max_resolve_requests is not None else settings.rss_max_resolve_requests,
                default=120,
                minimum=0,
                maximum=500,
            ),
            timeout_seconds=clamp_int(
                resolve_timeout_ms or settings.rss_resolve_timeout_ms, default=3500, minimum=500, maximum=10000
            )
            / 1000,
        ),
        mode=str(mode or "poll").strip().lower(),
    )

    with poll_run_span("rss", poller.run.run_id, mode=poller.mode, feeds_total=len(poller.feeds)) as span:
        if not poller.feeds:
            logger.info("rss poll skipped: no feeds configured")
            return poller.summary(skipped=True)
        if client is not None:
            summary = await poller.run_with(client)
        else:
            async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as temp_client:
                summary = await poller.run_with(temp_client)
        record_summary(span, summary)

    logger.info(
        "rss poll finished run_id=%s mode=%s feeds=%s failed=%s processed=%s ingested=%s",
        summary["run_id"],
        summary["mode"],
        summary["feeds_processed"],
        summary["feeds_failed"],
        summary["processed"],
        summary["ingested_count"],
    )
    return summary


class _FeedPoller:
    def __init__(
        self,
        *,
        ingest: Ingest | None,
        normalize: NormalizeURL,
        feeds: list[str],
        max_items: int,
        allow: list[str],
        block: list[str],
        quota: QuotaEnforcer,
        sample_limit: int,
        max_candidate_attempts: int,
        budget: ResolverBudget,
        mode: str,
    ) -> None:
        self.ingest = ingest
        self.normalize = normalize
        self.feeds = feeds
        self.max_items = max_items
        self.allow = allow
        self.block = block
        self.quota = quota
        self.sample_limit = sample_limit
        self.max_candidate_attempts = max_candidate_attempts
        self.budget = budget
        self.mode = mode

        self.run = PollRun(results_sample_limit=5)
        self.feeds_processed = 0
        self.feeds_failed = 0
        self.items_listed = 0
        self.items_filtered_allow = 0
        self.items_filtered_block = 0
        self.skipped_empty = 0
        self.reason_buckets = new_reason_buckets()
        self.unsupported_domain_by_host: dict[str, int] = {}
        self.rejected_url_samples: list[dict[str, str]] = []
        self.feed_summaries: list[FeedSummary] = []

    async def run_with(self, client: httpx.AsyncClient) -> dict[str, Any]:
        classifier = UrlClassifier(
            self.normalize,
            allowed_source_domains=FEED_ALLOWED_SOURCE_DOMAINS,
            wrapper_resolver=lambda url: resolve_google_news_link(client, url, self.budget),
            max_candidate_attempts=self.max_candidate_attempts,
            sample_limit=self.sample_limit,
        )
        for feed_url in self.feeds:
            if self.run.processed >= self.max_items:
                break
            self.feeds_processed += 1
            feed = FeedSummary(feed_url=feed_url)
            self.feed_summaries.append(feed)
            with tracer.start_as_current_span("rss.process_feed") as span:
                span.set_attribute("rss.feed_url", feed_url)
                items = await self._load_items(client, feed_url)
                if items is None:
                    continue
                feed.items_listed = len(items)
                self.items_listed += len(items)
                feed_host = host_from_url(feed_url) or "unknown"
                for item in items:
                    if self.run.processed >= self.max_items:
                        break
                    self.run.processed += 1
                    feed.processed += 1
                    await self._process_item(classifier, item, feed, feed_host)
        return self.summary()

    async def _load_items(self, client: httpx.AsyncClient, feed_url: str) -> list[FeedItem] | None:
        try:
            document = await fetch_feed(client, feed_url)
        except UpstreamFetchError as exc:
            logger.warning("feed fetch failed feed_url=%s: %s", feed_url, exc)
            self.feeds_failed += 1
            self.run.blocked_or_failed_fetch += 1
            return None
        if not document.content.strip():
            logger.warning("feed returned an empty body feed_url=%s", feed_url)
            self.feeds_failed += 1
            return None
        return parse_feed_items(document.content, document.headers)

    async def _process_item(
        self,
        classifier: UrlClassifier,
        item: FeedItem,
        feed: FeedSummary,
        feed_host: str,
    ) -> None:
        filter_text = f"{item.title}\n{item.summary}"
        if self.block and contains_any_keyword(filter_text, self.block):
            self.items_filtered_block += 1
            return
        if self.allow and not contains_any_keyword(filter_text, self.allow):
            self.items_filtered_allow += 1
            return

        raw_urls = unique_texts([item.link, *extract_urls(filter_text)])
        self.run.urls_found_total += len(raw_urls)
        self.run.urls_unique.update(raw_urls)
        if not raw_urls:
            self.skipped_empty += 1
            self.run.ignored += 1
            self.reason_buckets["no_url_in_item"] += 1
            feed.reason_buckets["no_url_in_item"] += 1
            return

        classified = await classifier.classify(raw_urls)
        self.run.record_classification(classified)
        self._merge_diagnostics(classified, feed)
        if not classified.accepted:
            self.skipped_empty += 1
            self.run.ignored += 1
            return

        decision = self.quota.apply(classified.job_urls)
        self.run.record_quota(decision)
        if self.ingest is None:
            return
        if not decision.kept:
            self.run.record_ingest(IngestResult.not_dispatched(), dispatched=False)
            return

        try:
            result = await call_ingest(
                self.ingest,
                IngestRequest(
                    raw_urls=decision.kept,
                    email_text=f"{item.title}\n\n{item.summary}"[:EMAIL_TEXT_MAX_CHARS],
                    email_html="",
                    email_subject=item.title[:EMAIL_SUBJECT_MAX_CHARS],
                    email_from=f"rss:{feed_host}",
                ),
            )
        except Exception:
            logger.warning("ingest failed for feed item link=%s", item.link, exc_info=True)
            self.run.blocked_or_failed_fetch += 1
            self.run.ignored += 1
            return

        self.reason_buckets["ingested"] += 1
        feed.reason_buckets["ingested"] += 1
        self.run.record_ingest(result, dispatched=True, accepted=classified.accepted)

    def _merge_diagnostics(self, classified: ClassificationResult, feed: FeedSummary) -> None:
        merge_reason_buckets(self.reason_buckets, classified.reason_buckets)
        merge_reason_buckets(feed.reason_buckets, classified.reason_buckets)
        merge_count_map(self.unsupported_domain_by_host, classified.unsupported_domain_by_host)
        merge_count_map(feed.unsupported_domain_by_host, classified.unsupported_domain_by_host)
        for sample in classified.rejected_url_samples:
            push_rejected_sample(self.rejected_url_samples, sample, self.sample_limit)
            push_rejected_sample(feed.rejected_url_samples, sample, self.sample_limit)
        push_unique_limited(feed.sample_candidates, classified.sample_candidates, self.sample_limit)

    def summary(self, *, skipped: bool = False) -> dict[str, Any]:
        summary: dict[str, Any] = {
            **self.run.base_summary(),
            "feeds_total": len(self.feeds),
            "feeds_processed": self.feeds_processed,
            "feeds_failed": self.feeds_failed,
            "max_per_run": self.max_items,
            "items_listed": self.items_listed,
            "skipped_empty": self.skipped_empty,
            "allow_keywords_count": len(self.allow),
            "block_keywords_count": len(self.block),
            "items_filtered_allow": self.items_filtered_allow,
            "items_filtered_block": self.items_filtered_block,
            "reason_buckets": dict(self.reason_buckets),
            "unsupported_domain_by_host": dict(self.unsupported_domain_by_host),
            "rejected_url_samples": list(self.rejected_url_samples),
            "feed_summaries": [feed.as_dict() for feed in self.feed_summaries],
            "mode": self.mode,
        }
        if skipped:
            summary["skipped"] = True
            summary["reason"] = "no_feeds_configured"
        return summary
