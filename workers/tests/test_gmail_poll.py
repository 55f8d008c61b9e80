from __future__ import annotations

import asyncio
import base64
from typing import Any

import httpx
import pytest

from jobintake.core.config import Settings
from jobintake.core.contracts import IngestRequest, MessageFeatures
from jobintake.core.errors import ConfigurationError, UpstreamFetchError
from jobintake.jobs.gmail_poll import poll_gmail_and_ingest
from jobintake.services.message_classifier import HeuristicMessageClassifier
from jobintake.services.normalizer import JobUrlNormalizer
from jobintake.services.state_repository import InMemoryStateRepository


class StaticTokenVault:
    async def get_access_token(self) -> str:
        return "access-token"


class RecordingIngest:
    def __init__(self) -> None:
        self.requests: list[IngestRequest] = []

    async def __call__(self, request: IngestRequest) -> dict[str, Any]:
        self.requests.append(request)
        return {
            "inserted_or_updated": len(request.raw_urls),
            "inserted_count": len(request.raw_urls),
            "results": [
                {"job_key": f"key-{url.rstrip('/').rsplit('/', 1)[-1]}", "job_url": url, "action": "inserted"}
                for url in request.raw_urls
            ],
        }


def _message(msg_id: str, internal_date: int, body: str, subject: str = "Job alert") -> dict[str, Any]:
    return {
        "id": msg_id,
        "threadId": f"thread-{msg_id}",
        "internalDate": str(internal_date),
        "payload": {
            "mimeType": "text/plain",
            "headers": [
                {"name": "Subject", "value": subject},
                {"name": "From", "value": "jobs-noreply@linkedin.com"},
            ],
            "body": {"data": base64.urlsafe_b64encode(body.encode("utf-8")).decode("ascii")},
        },
    }


class FakeGmail:
    def __init__(self, messages: list[dict[str, Any]], failing: set[str] | None = None) -> None:
        self.messages = {message["id"]: message for message in messages}
        self.listed = [message["id"] for message in messages]
        self.failing = failing or set()
        self.fetched: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        assert request.headers["authorization"] == "Bearer access-token"
        path = request.url.path
        if path == "/gmail/v1/users/me/messages":
            return httpx.Response(200, json={"messages": [{"id": msg_id} for msg_id in self.listed]})
        msg_id = path.rsplit("/", 1)[-1]
        self.fetched.append(msg_id)
        if msg_id in self.failing or msg_id not in self.messages:
            return httpx.Response(500)
        return httpx.Response(200, json=self.messages[msg_id])


def _poll(
    gmail: FakeGmail,
    repository: InMemoryStateRepository,
    ingest: Any,
    **kwargs: Any,
) -> dict[str, Any]:
    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(gmail.handler)) as client:
            return await poll_gmail_and_ingest(
                repository=repository,
                token_vault=StaticTokenVault(),
                ingest=ingest,
                client=client,
                settings=Settings(),
                **kwargs,
            )

    return asyncio.run(run())


def test_second_run_skips_already_ingested_messages() -> None:
    gmail = FakeGmail(
        [
            _message("m1", 1000, "See https://www.linkedin.com/jobs/view/111/ now"),
            _message("m2", 2000, "See https://www.naukri.com/job-listings-data-engineer-acme-222"),
        ]
    )
    repository = InMemoryStateRepository()
    ingest = RecordingIngest()

    first = _poll(gmail, repository, ingest, normalize=JobUrlNormalizer())
    second = _poll(gmail, repository, ingest, normalize=JobUrlNormalizer())

    assert first["processed"] == 2
    assert first["ingested_count"] == 2
    assert first["inserted_or_updated"] == 2
    assert first["results_sample"] == ["key-111", "key-job-listings-data-engineer-acme-222"]
    assert first["cursor_after"] == 2000
    assert [request.raw_urls for request in ingest.requests] == [
        ["https://www.linkedin.com/jobs/view/111/"],
        ["https://www.naukri.com/job-listings-data-engineer-acme-222"],
    ]
    assert repository.ingest_log["m1"].urls == ["https://www.linkedin.com/jobs/view/111/"]
    assert repository.ingest_log["m1"].job_keys == ["key-111"]
    assert repository.ingest_log["m2"].internal_date == 2000

    assert second["processed"] == 0
    assert second["skipped_already_ingested"] == 2
    assert len(ingest.requests) == 2
    assert repository.cursor == 2000
    assert repository.cursor_writes == 1


def test_messages_at_or_below_cursor_are_skipped_and_cursor_never_decreases() -> None:
    gmail = FakeGmail(
        [
            _message("old", 4000, "https://www.linkedin.com/jobs/view/1/"),
            _message("same", 5000, "https://www.linkedin.com/jobs/view/2/"),
            _message("new", 6000, "https://www.linkedin.com/jobs/view/3/"),
        ]
    )
    repository = InMemoryStateRepository()
    repository.cursor = 5000
    ingest = RecordingIngest()

    summary = _poll(gmail, repository, ingest)

    assert summary["skipped_already_ingested"] == 2
    assert summary["processed"] == 1
    assert summary["cursor_before"] == 5000
    assert summary["cursor_after"] == 6000
    assert set(repository.ingest_log) == {"new"}
    assert repository.cursor == 6000


def test_cursor_is_not_written_when_nothing_newer_was_seen() -> None:
    gmail = FakeGmail([_message("old", 100, "https://www.linkedin.com/jobs/view/1/")])
    repository = InMemoryStateRepository()
    repository.cursor = 500

    summary = _poll(gmail, repository, RecordingIngest())

    assert summary["cursor_after"] == 500
    assert repository.cursor_writes == 0


def test_caps_bound_kept_urls_per_message_and_per_run() -> None:
    gmail = FakeGmail(
        [
            _message(
                "m1",
                1000,
                " ".join(f"https://www.linkedin.com/jobs/view/{job_id}/" for job_id in (11, 12, 13)),
            ),
            _message("m2", 2000, "https://www.linkedin.com/jobs/view/21/ https://www.linkedin.com/jobs/view/22/"),
            _message("m3", 3000, "https://www.linkedin.com/jobs/view/31/"),
        ]
    )
    repository = InMemoryStateRepository()
    ingest = RecordingIngest()

    summary = _poll(
        gmail,
        repository,
        ingest,
        normalize=JobUrlNormalizer(),
        max_jobs_per_email=2,
        max_jobs_per_poll=3,
    )

    assert [len(request.raw_urls) for request in ingest.requests] == [2, 1]
    assert summary["jobs_kept_total"] == 3
    assert summary["jobs_dropped_due_to_caps_total"] == 2
    assert summary["jobs_dropped_due_to_item_cap_total"] == 1
    assert summary["jobs_dropped_due_to_run_cap_total"] == 1
    assert summary["max_jobs_per_email"] == 2
    assert summary["max_jobs_per_poll"] == 3
    assert gmail.fetched == ["m1", "m2"]
    assert set(repository.ingest_log) == {"m1", "m2"}
    assert repository.cursor == 2000


def test_promotional_message_is_logged_but_never_dispatched() -> None:
    gmail = FakeGmail(
        [
            _message("promo", 1000, "Upgrade today at https://example.com/pricing", subject="Try Premium free trial"),
        ]
    )
    repository = InMemoryStateRepository()
    ingest = RecordingIngest()

    summary = _poll(
        gmail,
        repository,
        ingest,
        normalize=JobUrlNormalizer(),
        classify_message=HeuristicMessageClassifier(),
    )

    assert summary["processed"] == 1
    assert summary["skipped_promotional"] == 1
    assert summary["skipped_promotional_heuristic"] == 1
    assert summary["skipped_promotional_ai"] == 0
    assert ingest.requests == []
    assert repository.ingest_log["promo"].urls == []
    assert repository.ingest_log["promo"].job_keys == []
    assert repository.cursor == 1000


def test_message_classifier_verdicts_are_coerced_and_failures_do_not_reject() -> None:
    gmail = FakeGmail(
        [
            _message("ai", 1000, "https://www.linkedin.com/jobs/view/1/"),
            _message("broken", 2000, "https://www.linkedin.com/jobs/view/2/"),
        ]
    )
    seen: list[MessageFeatures] = []

    async def classify_message(features: MessageFeatures) -> dict[str, Any]:
        seen.append(features)
        if "/1/" in features.combined_text:
            return {"reject": True, "by": "ai", "reason": "digest"}
        raise RuntimeError("classifier offline")

    ingest = RecordingIngest()
    summary = _poll(gmail, InMemoryStateRepository(), ingest, classify_message=classify_message)

    assert summary["skipped_promotional_ai"] == 1
    assert summary["processed"] == 2
    assert [request.raw_urls for request in ingest.requests] == [["https://www.linkedin.com/jobs/view/2"]]
    assert seen[0].urls_job_domains_total == 1
    assert seen[0].from_email == "jobs-noreply@linkedin.com"


def test_messages_without_job_urls_count_as_ignored_and_are_logged() -> None:
    gmail = FakeGmail(
        [
            _message(
                "tracking",
                1000,
                "https://r.example.com/click?url=https%3A%2F%2Fwww.linkedin.com%2Fjobs%2Fview%2F9 "
                "https://example.com/unsubscribe",
            )
        ]
    )
    repository = InMemoryStateRepository()
    ingest = RecordingIngest()

    summary = _poll(gmail, repository, ingest)

    assert ingest.requests == []
    assert summary["ignored"] == 1
    assert summary["ingested_count"] == 0
    assert summary["ignored_domains_count"] == 2
    assert summary["urls_unique_total"] == 2
    assert repository.ingest_log["tracking"].urls == []


def test_failed_message_fetch_is_counted_and_not_logged() -> None:
    gmail = FakeGmail(
        [
            _message("ok", 1000, "https://www.linkedin.com/jobs/view/1/"),
            _message("bad", 2000, "https://www.linkedin.com/jobs/view/2/"),
        ],
        failing={"bad"},
    )
    gmail.listed.insert(1, "")
    repository = InMemoryStateRepository()

    summary = _poll(gmail, repository, RecordingIngest())

    assert summary["scanned"] == 3
    assert summary["blocked_or_failed_fetch"] == 1
    assert summary["processed"] == 1
    assert set(repository.ingest_log) == {"ok"}
    assert repository.cursor == 1000


def test_listing_failure_is_fatal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="unauthorized")

    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await poll_gmail_and_ingest(
                repository=InMemoryStateRepository(),
                token_vault=StaticTokenVault(),
                ingest=RecordingIngest(),
                client=client,
                settings=Settings(),
            )

    with pytest.raises(UpstreamFetchError):
        asyncio.run(run())


def test_ingest_failure_aborts_the_run_after_logging_earlier_messages() -> None:
    gmail = FakeGmail(
        [
            _message("m1", 1000, "https://www.linkedin.com/jobs/view/1/"),
            _message("m2", 2000, "https://www.linkedin.com/jobs/view/2/"),
        ]
    )
    repository = InMemoryStateRepository()
    calls: list[IngestRequest] = []

    async def ingest(request: IngestRequest) -> dict[str, Any]:
        calls.append(request)
        if len(calls) > 1:
            raise RuntimeError("ingest api down")
        return {"inserted_or_updated": 1}

    with pytest.raises(RuntimeError):
        _poll(gmail, repository, ingest)

    assert set(repository.ingest_log) == {"m1"}
    assert repository.cursor is None


def test_missing_ingest_callback_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        asyncio.run(
            poll_gmail_and_ingest(
                repository=InMemoryStateRepository(),
                token_vault=StaticTokenVault(),
                ingest=None,
                settings=Settings(),
            )
        )
