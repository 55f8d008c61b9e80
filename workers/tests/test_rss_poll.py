from __future__ import annotations

import asyncio
from typing import Any, Callable

import httpx
import pytest

from jobintake.core.config import Settings
from jobintake.core.contracts import IngestRequest
from jobintake.core.errors import ConfigurationError
from jobintake.jobs.rss_poll import diagnose_rss_feeds, parse_feed_urls, poll_rss_feeds_and_ingest
from jobintake.services.normalizer import JobUrlNormalizer


def _rss(*items: str) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel><title>Jobs</title>'
        + "".join(items)
        + "</channel></rss>"
    )


def _item(title: str, link: str = "", description: str = "") -> str:
    link_xml = f"<link>{link}</link>" if link else ""
    return f"<item><title>{title}</title>{link_xml}<description><![CDATA[{description}]]></description></item>"


class RecordingIngest:
    def __init__(self, fail_on: Callable[[IngestRequest], bool] | None = None) -> None:
        self.requests: list[IngestRequest] = []
        self.fail_on = fail_on

    async def __call__(self, request: IngestRequest) -> dict[str, Any]:
        self.requests.append(request)
        if self.fail_on is not None and self.fail_on(request):
            raise RuntimeError("ingest api down")
        return {
            "inserted_or_updated": 1,
            "inserted_count": 1,
            "results": [{"job_key": f"key-{index}", "job_url": url} for index, url in enumerate(request.raw_urls)],
        }


def _run(
    feeds: dict[str, httpx.Response | str],
    poll: Callable[..., Any] = poll_rss_feeds_and_ingest,
    routes: dict[str, httpx.Response | str] | None = None,
    **kwargs: Any,
) -> dict[str, Any]:
    responses = {**feeds, **(routes or {})}

    def handler(request: httpx.Request) -> httpx.Response:
        body = responses.get(str(request.url))
        if body is None:
            return httpx.Response(404)
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, text=body)

    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await poll(
                normalize=JobUrlNormalizer(),
                feeds=list(feeds),
                client=client,
                settings=Settings(),
                **kwargs,
            )

    return asyncio.run(run())


def test_backend_engineer_item_with_body_link_is_ingested_once() -> None:
    ingest = RecordingIngest()
    feed_url = "https://feeds.example.com/jobs.xml"

    summary = _run(
        {
            feed_url: _rss(
                _item(
                    "Backend Engineer",
                    description="<p>Apply at https://www.linkedin.com/jobs/view/555/ today</p>",
                )
            )
        },
        ingest=ingest,
        allow_keywords=["backend"],
        block_keywords=[],
    )

    assert summary["items_filtered_allow"] == 0
    assert summary["processed"] == 1
    assert len(ingest.requests) == 1
    request = ingest.requests[0]
    assert request.raw_urls == ["https://www.linkedin.com/jobs/view/555/"]
    assert request.email_subject == "Backend Engineer"
    assert request.email_from == "rss:feeds.example.com"
    assert request.email_html == ""
    assert request.email_text == "Backend Engineer\n\nApply at https://www.linkedin.com/jobs/view/555/ today"
    assert summary["ingested_count"] == 1
    assert summary["reason_buckets"]["ingested"] == 1
    assert summary["results_sample"] == ["key-0"]
    assert summary["source_summary"][0]["source_domain"] == "linkedin"
    assert summary["mode"] == "poll"
    assert summary["feed_summaries"][0]["sample_candidates"] == ["https://www.linkedin.com/jobs/view/555/"]


def test_block_list_runs_before_allow_list() -> None:
    ingest = RecordingIngest()

    summary = _run(
        {
            "https://feeds.example.com/a.xml": _rss(
                _item("Backend Intern", "https://www.linkedin.com/jobs/view/1/"),
                _item("Frontend Engineer", "https://www.linkedin.com/jobs/view/2/"),
                _item("Backend Engineer", "https://www.linkedin.com/jobs/view/3/"),
            )
        },
        ingest=ingest,
        allow_keywords="backend",
        block_keywords="intern",
    )

    assert summary["items_filtered_block"] == 1
    assert summary["items_filtered_allow"] == 1
    assert summary["allow_keywords_count"] == 1
    assert summary["block_keywords_count"] == 1
    assert summary["processed"] == 3
    assert [request.raw_urls for request in ingest.requests] == [["https://www.linkedin.com/jobs/view/3/"]]


def test_failed_and_empty_feeds_are_counted_and_skipped() -> None:
    ingest = RecordingIngest()

    summary = _run(
        {
            "https://down.example.com/rss": httpx.Response(503),
            "https://empty.example.com/rss": "   ",
            "https://ok.example.com/rss": _rss(_item("Data role", "https://www.naukri.com/job-listings-data-acme-9")),
        },
        ingest=ingest,
    )

    assert summary["feeds_total"] == 3
    assert summary["feeds_processed"] == 3
    assert summary["feeds_failed"] == 2
    assert summary["blocked_or_failed_fetch"] == 1
    assert summary["items_listed"] == 1
    assert len(ingest.requests) == 1
    assert [feed["feed_url"] for feed in summary["feed_summaries"]] == [
        "https://down.example.com/rss",
        "https://empty.example.com/rss",
        "https://ok.example.com/rss",
    ]


def test_items_without_supported_urls_are_ignored_with_reasons() -> None:
    ingest = RecordingIngest()

    summary = _run(
        {
            "https://feeds.example.com/rss": _rss(
                _item("No links at all"),
                _item("Company blog", "https://blog.example.com/post/1"),
            )
        },
        ingest=ingest,
    )

    assert ingest.requests == []
    assert summary["skipped_empty"] == 2
    assert summary["ignored"] == 2
    assert summary["reason_buckets"]["no_url_in_item"] == 1
    assert summary["reason_buckets"]["normalize_ignored"] == 1
    assert summary["rejected_url_samples"] == [
        {"reason": "normalize_ignored", "url": "https://blog.example.com/post/1"}
    ]
    assert summary["feed_summaries"][0]["reason_buckets"]["no_url_in_item"] == 1


def test_unsupported_source_domains_are_grouped_by_host() -> None:
    async def normalize(url: str) -> dict[str, Any]:
        return {"job_url": url, "source_domain": "greenhouse.io"}

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text=_rss(_item("Engineer", "https://boards.greenhouse.io/acme/jobs/1")))

    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await poll_rss_feeds_and_ingest(
                normalize=normalize,
                ingest=RecordingIngest(),
                feeds="https://feeds.example.com/rss",
                client=client,
                settings=Settings(),
            )

    summary = asyncio.run(run())

    assert summary["reason_buckets"]["unsupported_domain"] == 1
    assert summary["unsupported_domain_by_host"] == {"boards.greenhouse.io": 1}
    assert summary["ignored_domains_count"] == 1


def test_ingest_failure_is_counted_and_the_run_continues() -> None:
    ingest = RecordingIngest(fail_on=lambda request: request.raw_urls[0].endswith("/1/"))

    summary = _run(
        {
            "https://feeds.example.com/rss": _rss(
                _item("First", "https://www.linkedin.com/jobs/view/1/"),
                _item("Second", "https://www.linkedin.com/jobs/view/2/"),
            )
        },
        ingest=ingest,
    )

    assert len(ingest.requests) == 2
    assert summary["blocked_or_failed_fetch"] == 1
    assert summary["ignored"] == 1
    assert summary["ingested_count"] == 1
    assert summary["reason_buckets"]["ingested"] == 1


def test_max_per_run_bounds_items_across_feeds() -> None:
    ingest = RecordingIngest()

    summary = _run(
        {
            "https://one.example.com/rss": _rss(
                _item("A", "https://www.linkedin.com/jobs/view/1/"),
                _item("B", "https://www.linkedin.com/jobs/view/2/"),
            ),
            "https://two.example.com/rss": _rss(_item("C", "https://www.linkedin.com/jobs/view/3/")),
        },
        ingest=ingest,
        max_per_run=2,
    )

    assert summary["processed"] == 2
    assert summary["feeds_processed"] == 1
    assert summary["max_per_run"] == 2
    assert len(ingest.requests) == 2


def test_run_cap_limits_dispatched_urls() -> None:
    ingest = RecordingIngest()

    summary = _run(
        {
            "https://one.example.com/rss": _rss(
                _item("A", "https://www.linkedin.com/jobs/view/1/"),
                _item("B", "https://www.linkedin.com/jobs/view/2/"),
                _item("C", "https://www.linkedin.com/jobs/view/3/"),
            ),
        },
        ingest=ingest,
        max_jobs_per_poll=2,
    )

    assert len(ingest.requests) == 2
    assert summary["jobs_kept_total"] == 2
    assert summary["jobs_dropped_due_to_caps_total"] == 1
    assert summary["jobs_dropped_due_to_item_cap_total"] == 0
    assert summary["jobs_dropped_due_to_run_cap_total"] == 1
    assert summary["ignored"] == 1


def test_news_wrapper_links_are_resolved_before_classification() -> None:
    ingest = RecordingIngest()
    wrapper = "https://news.google.com/rss/articles/CBMiXyz?oc=5"

    summary = _run(
        {"https://news.google.com/rss/search?q=jobs": _rss(_item("Hiring: Data Engineer", wrapper))},
        routes={
            wrapper: httpx.Response(302, headers={"location": "https://www.naukri.com/job-listings-data-acme-77"}),
            "https://www.naukri.com/job-listings-data-acme-77": "<html>posting</html>",
        },
        ingest=ingest,
        max_resolve_requests=5,
    )

    assert [request.raw_urls for request in ingest.requests] == [["https://www.naukri.com/job-listings-data-acme-77"]]
    assert summary["reason_buckets"]["unresolved_wrapper"] == 0


def test_diagnostics_mode_classifies_without_dispatching() -> None:
    summary = _run(
        {"https://feeds.example.com/rss": _rss(_item("Backend", "https://www.linkedin.com/jobs/view/8/"))},
        poll=diagnose_rss_feeds,
    )

    assert summary["mode"] == "diagnostics"
    assert summary["urls_job_domains_total"] == 1
    assert summary["ingested_count"] == 0
    assert summary["reason_buckets"]["ingested"] == 0
    assert summary["feed_summaries"][0]["sample_candidates"] == ["https://www.linkedin.com/jobs/view/8/"]


def test_no_feeds_configured_returns_skipped_summary() -> None:
    summary = asyncio.run(
        poll_rss_feeds_and_ingest(
            normalize=JobUrlNormalizer(),
            ingest=RecordingIngest(),
            feeds=["", "ftp://example.com/feed", "  "],
            settings=Settings(),
        )
    )

    assert summary["skipped"] is True
    assert summary["reason"] == "no_feeds_configured"
    assert summary["feeds_total"] == 0
    assert summary["processed"] == 0


def test_callbacks_are_required() -> None:
    with pytest.raises(ConfigurationError):
        asyncio.run(poll_rss_feeds_and_ingest(normalize=JobUrlNormalizer(), feeds=[], settings=Settings()))
    with pytest.raises(ConfigurationError):
        asyncio.run(poll_rss_feeds_and_ingest(normalize=None, ingest=RecordingIngest(), settings=Settings()))


def test_parse_feed_urls_splits_dedupes_and_filters() -> None:
    raw = "https://a.example.com/rss, https://b.example.com/rss\nhttps://a.example.com/rss ftp://c.example.com"

    assert parse_feed_urls(raw) == ["https://a.example.com/rss", "https://b.example.com/rss"]
