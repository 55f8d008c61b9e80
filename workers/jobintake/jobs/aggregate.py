"""Run-scoped counters shared by the mailbox and feed pollers."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from jobintake.core.contracts import IngestResult, JobDescriptor, as_count, as_text
from jobintake.core.urls import UrlScan, normalize_source_domain
from jobintake.jobs.classify import ClassificationResult
from jobintake.jobs.quota import QuotaDecision

SOURCE_SUMMARY_FIELDS = (
    "total",
    "recovered",
    "manual_needed",
    "needs_ai",
    "blocked",
    "low_quality",
    "link_only",
    "ignored",
    "inserted",
    "updated",
)
FALLBACK_REASON_FIELDS = {
    "manual_required": "manual_needed",
    "low_quality": "low_quality",
    "blocked": "blocked",
}


@dataclass(slots=True)
class PollRun:
    results_sample_limit: int = 3
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ts: int = field(default_factory=lambda: int(time.time() * 1000))
    scanned: int = 0
    processed: int = 0
    skipped_already_ingested: int = 0
    blocked_or_failed_fetch: int = 0
    skipped_promotional: int = 0
    skipped_promotional_heuristic: int = 0
    skipped_promotional_ai: int = 0
    urls_found_total: int = 0
    urls_unique: set[str] = field(default_factory=set)
    urls_job_domains_total: int = 0
    ignored_domains_count: int = 0
    jobs_kept_total: int = 0
    jobs_dropped_due_to_caps_total: int = 0
    jobs_dropped_due_to_item_cap_total: int = 0
    jobs_dropped_due_to_run_cap_total: int = 0
    ingested_count: int = 0
    inserted_or_updated: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    ignored: int = 0
    link_only: int = 0
    results_sample: list[str] = field(default_factory=list)
    source_summary: dict[str, dict[str, Any]] = field(default_factory=dict)

    def record_urls(self, scan: UrlScan) -> None:
        self.urls_found_total += len(scan.found)
        self.urls_unique.update(scan.unique)

    def record_classification(self, classified: ClassificationResult) -> None:
        self.urls_job_domains_total += len(classified.accepted)
        self.ignored_domains_count += classified.ignored_domains_count

    def record_quota(self, decision: QuotaDecision) -> None:
        self.jobs_kept_total += len(decision.kept)
        self.jobs_dropped_due_to_caps_total += decision.dropped
        self.jobs_dropped_due_to_item_cap_total += decision.dropped_per_item
        self.jobs_dropped_due_to_run_cap_total += decision.dropped_per_run

    def record_ingest(
        self,
        result: IngestResult,
        *,
        dispatched: bool,
        accepted: list[JobDescriptor] | None = None,
    ) -> None:
        if dispatched:
            self.ingested_count += 1
        self.inserted_or_updated += result.inserted_or_updated
        self.inserted_count += result.inserted_count
        self.updated_count += result.updated_count
        self.ignored += result.ignored
        self.link_only += result.link_only
        self.add_result_keys(result.job_keys())
        if dispatched:
            self.merge_source_summary(result, accepted or [])

    def add_result_keys(self, keys: list[str]) -> None:
        for key in keys:
            if len(self.results_sample) >= self.results_sample_limit:
                break
            if key not in self.results_sample:
                self.results_sample.append(key)

    def merge_source_summary(self, result: IngestResult, accepted: list[JobDescriptor]) -> None:
        """Fold one ingest result into the per-source rollup.

        Callbacks that report ``source_summary`` rows are trusted as-is; for the
        rest the rollup is derived from individual ``results`` rows. Only one of
        the two paths runs per result.
        """
        if result.source_summary:
            for row in result.source_summary:
                bucket = self._source_bucket(normalize_source_domain(as_text(row.get("source_domain"))))
                for name in SOURCE_SUMMARY_FIELDS:
                    bucket[name] += as_count(row.get(name))
            return

        domain_by_url = {descriptor.job_url: descriptor.source_domain for descriptor in accepted}
        for row in result.results:
            source = as_text(row.get("source_domain")) or domain_by_url.get(as_text(row.get("job_url")) or "")
            bucket = self._source_bucket(normalize_source_domain(source))
            bucket["total"] += 1

            action = (as_text(row.get("action")) or "").lower()
            status = (as_text(row.get("status")) or "").upper()
            fallback_reason = (as_text(row.get("fallback_reason")) or "").lower()
            if action in {"inserted", "updated", "ignored"}:
                bucket[action] += 1
            if status == "LINK_ONLY" or action == "link_only":
                bucket["link_only"] += 1
            if fallback_reason in FALLBACK_REASON_FIELDS:
                bucket[FALLBACK_REASON_FIELDS[fallback_reason]] += 1
            if action != "ignored" and status != "LINK_ONLY":
                bucket["recovered"] += 1

    def source_summary_rows(self) -> list[dict[str, Any]]:
        return sorted(self.source_summary.values(), key=lambda row: row["total"], reverse=True)

    def base_summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "ts": self.ts,
            "processed": self.processed,
            "blocked_or_failed_fetch": self.blocked_or_failed_fetch,
            "urls_found_total": self.urls_found_total,
            "urls_unique_total": len(self.urls_unique),
            "urls_job_domains_total": self.urls_job_domains_total,
            "ignored_domains_count": self.ignored_domains_count,
            "jobs_kept_total": self.jobs_kept_total,
            "jobs_dropped_due_to_caps_total": self.jobs_dropped_due_to_caps_total,
            "jobs_dropped_due_to_item_cap_total": self.jobs_dropped_due_to_item_cap_total,
            "jobs_dropped_due_to_run_cap_total": self.jobs_dropped_due_to_run_cap_total,
            "ingested_count": self.ingested_count,
            "inserted_or_updated": self.inserted_or_updated,
            "inserted_count": self.inserted_count,
            "updated_count": self.updated_count,
            "ignored": self.ignored,
            "link_only": self.link_only,
            "results_sample": list(self.results_sample),
            "source_summary": self.source_summary_rows(),
        }

    def _source_bucket(self, source: str) -> dict[str, Any]:
        bucket = self.source_summary.get(source)
        if bucket is None:
            bucket = {"source_domain": source, **{name: 0 for name in SOURCE_SUMMARY_FIELDS}}
            self.source_summary[source] = bucket
        return bucket
