from __future__ import annotations

import logging
from typing import Any

import httpx
from opentelemetry import trace

from jobintake.core.config import Settings, get_settings
from jobintake.core.contracts import (
    ClassifyMessage,
    Ingest,
    IngestRequest,
    IngestResult,
    MessageFeatures,
    MessageVerdict,
    NormalizeURL,
    call_ingest,
    call_message_classifier,
    clamp_int,
)
from jobintake.core.errors import ConfigurationError
from jobintake.core.telemetry import poll_run_span, record_summary
from jobintake.core.urls import scan_urls
from jobintake.jobs.aggregate import PollRun
from jobintake.jobs.classify import UrlClassifier
from jobintake.jobs.quota import QuotaEnforcer
from jobintake.services.gmail_client import GmailClient, GmailMessage, parse_gmail_message
from jobintake.services.state_repository import IngestLogRecord, IngestStateRepository
from jobintake.services.token_vault import TokenVault

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def poll_gmail_and_ingest(
    *,
    repository: IngestStateRepository,
    token_vault: TokenVault,
    ingest: Ingest,
    normalize: NormalizeURL | None = None,
    classify_message: ClassifyMessage | None = None,
    query: str | None = None,
    max_per_run: int | None = None,
    max_jobs_per_email: int | None = None,
    max_jobs_per_poll: int | None = None,
    client: httpx.AsyncClient | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Run one mailbox poll and return its summary.

    Messages already present in the ingest log, or at or below the stored
    ``internalDate`` cursor, are skipped. Every processed message gets exactly
    one log record, written after its ingest call returns. The cursor is
    advanced once, at the end, when the run saw a newer message.
    """
    if not callable(ingest):
        raise ConfigurationError("ingest callback is required")
    settings = settings or get_settings()

    poller = _GmailPoller(
        repository=repository,
        ingest=ingest,
        classify_message=classify_message,
        classifier=UrlClassifier(normalize),
        query=str(query or settings.gmail_query).strip(),
        max_results=clamp_int(max_per_run or settings.gmail_max_per_run, default=25, minimum=1, maximum=100),
        max_jobs_per_email=clamp_int(
            max_jobs_per_email or settings.max_jobs_per_email, default=3, minimum=1, maximum=50
        ),
        max_jobs_per_poll=clamp_int(
            max_jobs_per_poll or settings.max_jobs_per_poll, default=10, minimum=1, maximum=500
        ),
    )

    with poll_run_span("gmail", poller.run.run_id, query=poller.query) as span:
        access_token = await token_vault.get_access_token()
        if client is not None:
            summary = await poller.run_with(GmailClient(client, access_token))
        else:
            async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as temp_client:
                summary = await poller.run_with(GmailClient(temp_client, access_token))
        record_summary(span, summary)

    logger.info(
        "gmail poll finished run_id=%s scanned=%s processed=%s skipped=%s kept=%s failed_fetch=%s",
        summary["run_id"],
        summary["scanned"],
        summary["processed"],
        summary["skipped_already_ingested"],
        summary["jobs_kept_total"],
        summary["blocked_or_failed_fetch"],
    )
    return summary


class _GmailPoller:
    def __init__(
        self,
        *,
        repository: IngestStateRepository,
        ingest: Ingest,
        classify_message: ClassifyMessage | None,
        classifier: UrlClassifier,
        query: str,
        max_results: int,
        max_jobs_per_email: int,
        max_jobs_per_poll: int,
    ) -> None:
        self.repository = repository
        self.ingest = ingest
        self.classify_message = classify_message
        self.classifier = classifier
        self.query = query
        self.max_results = max_results
        self.max_jobs_per_email = max_jobs_per_email
        self.max_jobs_per_poll = max_jobs_per_poll
        self.run = PollRun(results_sample_limit=3)
        self.quota = QuotaEnforcer(per_item_cap=max_jobs_per_email, per_run_cap=max_jobs_per_poll)

    async def run_with(self, gmail: GmailClient) -> dict[str, Any]:
        last_seen = await self.repository.get_gmail_cursor()
        newest_internal_date = last_seen

        message_ids = await gmail.list_message_ids(self.query, self.max_results)
        self.run.scanned = len(message_ids)

        for msg_id in message_ids:
            if self.quota.exhausted:
                break
            if not msg_id:
                continue
            if await self.repository.ingest_log_exists(msg_id):
                self.run.skipped_already_ingested += 1
                continue

            with tracer.start_as_current_span("gmail.process_message") as span:
                span.set_attribute("gmail.msg_id", msg_id)
                full = await gmail.get_message(msg_id)
                if full is None:
                    self.run.blocked_or_failed_fetch += 1
                    continue

                message = parse_gmail_message(full)
                message.msg_id = message.msg_id or msg_id
                if last_seen and message.internal_date and message.internal_date <= last_seen:
                    self.run.skipped_already_ingested += 1
                    continue

                await self._process_message(message)
                newest_internal_date = max(newest_internal_date, message.internal_date)

        if newest_internal_date > last_seen:
            await self.repository.put_gmail_cursor(newest_internal_date)

        return {
            **self.run.base_summary(),
            "query_used": self.query,
            "max_results": self.max_results,
            "max_jobs_per_email": self.max_jobs_per_email,
            "max_jobs_per_poll": self.max_jobs_per_poll,
            "messages_listed": len(message_ids),
            "scanned": self.run.scanned,
            "skipped_already_ingested": self.run.skipped_already_ingested,
            "skipped_promotional": self.run.skipped_promotional,
            "skipped_promotional_heuristic": self.run.skipped_promotional_heuristic,
            "skipped_promotional_ai": self.run.skipped_promotional_ai,
            "cursor_before": last_seen,
            "cursor_after": max(last_seen, newest_internal_date),
        }

    async def _process_message(self, message: GmailMessage) -> None:
        scan = scan_urls(message.combined_text)
        classified = await self.classifier.classify(scan.unique)

        verdict = MessageVerdict()
        if self.classify_message is not None:
            verdict = await call_message_classifier(
                self.classify_message,
                MessageFeatures(
                    subject=message.subject,
                    from_email=message.from_email,
                    email_text=message.email_text,
                    email_html=message.email_html,
                    combined_text=message.combined_text,
                    urls_found_total=len(scan.found),
                    urls_unique_total=len(scan.unique),
                    urls_job_domains_total=len(classified.accepted),
                ),
            )

        if verdict.reject:
            self.run.processed += 1
            self.run.skipped_promotional += 1
            if verdict.by == "heuristic":
                self.run.skipped_promotional_heuristic += 1
            elif verdict.by == "ai":
                self.run.skipped_promotional_ai += 1
            logger.info(
                "skipping promotional message msg_id=%s by=%s reason=%s",
                message.msg_id,
                verdict.by,
                verdict.reason,
            )
            await self._write_log(message, urls=[], job_keys=[])
            return

        decision = self.quota.apply(classified.job_urls)
        self.run.record_urls(scan)
        self.run.record_classification(classified)
        self.run.record_quota(decision)

        if decision.kept:
            result = await call_ingest(
                self.ingest,
                IngestRequest(
                    raw_urls=decision.kept,
                    email_text=message.email_text,
                    email_html=message.email_html,
                    email_subject=message.subject,
                    email_from=message.from_email,
                ),
            )
        else:
            result = IngestResult.not_dispatched()

        self.run.processed += 1
        self.run.record_ingest(result, dispatched=bool(decision.kept), accepted=classified.accepted)
        await self._write_log(message, urls=decision.kept, job_keys=result.job_keys())

    async def _write_log(self, message: GmailMessage, *, urls: list[str], job_keys: list[str]) -> None:
        await self.repository.insert_ingest_log(
            IngestLogRecord(
                msg_id=message.msg_id,
                thread_id=message.thread_id,
                internal_date=message.internal_date or None,
                subject=message.subject or None,
                from_email=message.from_email or None,
                urls=list(urls),
                job_keys=job_keys,
            )
        )
