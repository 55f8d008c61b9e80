"""Capability interfaces the pipeline depends on, and their value types.

The pipeline never trusts a collaborator's return value: every result passes
through a ``coerce_*`` helper that turns malformed data into the most
conservative outcome instead of raising.
"""

from __future__ import annotations

import inspect
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Literal, Protocol

logger = logging.getLogger(__name__)

RejectionSource = Literal["heuristic", "ai", "none"]


@dataclass(slots=True)
class JobDescriptor:
    job_url: str
    job_key: str | None = None
    job_id: str | None = None
    source_domain: str | None = None


@dataclass(slots=True)
class MessageFeatures:
    subject: str
    from_email: str
    email_text: str
    email_html: str
    combined_text: str
    urls_found_total: int
    urls_unique_total: int
    urls_job_domains_total: int


@dataclass(slots=True)
class MessageVerdict:
    reject: bool = False
    by: RejectionSource = "none"
    reason: str = ""


@dataclass(slots=True)
class IngestRequest:
    raw_urls: list[str]
    email_text: str = ""
    email_html: str = ""
    email_subject: str = ""
    email_from: str = ""

    def as_payload(self) -> dict[str, Any]:
        return {
            "raw_urls": list(self.raw_urls),
            "email_text": self.email_text,
            "email_html": self.email_html or "",
            "email_subject": self.email_subject,
            "email_from": self.email_from,
        }


@dataclass(slots=True)
class IngestResult:
    inserted_or_updated: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    ignored: int = 0
    link_only: int = 0
    results: list[dict[str, Any]] = field(default_factory=list)
    source_summary: list[dict[str, Any]] | None = None

    @classmethod
    def not_dispatched(cls) -> "IngestResult":
        return cls(ignored=1)

    def job_keys(self) -> list[str]:
        keys: list[str] = []
        for row in self.results:
            key = as_text(row.get("job_key"))
            if key:
                keys.append(key)
        return keys


class NormalizeURL(Protocol):
    def __call__(self, url: str) -> Awaitable[JobDescriptor | dict[str, Any] | None]: ...


class ClassifyMessage(Protocol):
    def __call__(self, features: MessageFeatures) -> Awaitable[MessageVerdict | dict[str, Any] | None]: ...


class Ingest(Protocol):
    def __call__(self, request: IngestRequest) -> Awaitable[IngestResult | dict[str, Any]]: ...


async def call_normalizer(normalize: NormalizeURL, url: str) -> JobDescriptor | None:
    try:
        raw = normalize(url)
        if inspect.isawaitable(raw):
            raw = await raw
    except Exception as exc:
        logger.debug("normalizer failed for url=%s: %s", url, exc)
        return None
    return coerce_job_descriptor(raw)


async def call_message_classifier(classify: ClassifyMessage, features: MessageFeatures) -> MessageVerdict:
    try:
        raw = classify(features)
        if inspect.isawaitable(raw):
            raw = await raw
    except Exception as exc:
        logger.warning("message classifier failed for subject=%r: %s", features.subject[:80], exc)
        return MessageVerdict()
    return coerce_message_verdict(raw)


async def call_ingest(ingest: Ingest, request: IngestRequest) -> IngestResult:
    raw = ingest(request)
    if inspect.isawaitable(raw):
        raw = await raw
    return coerce_ingest_result(raw)


def coerce_job_descriptor(value: Any) -> JobDescriptor | None:
    if isinstance(value, JobDescriptor):
        return value if value.job_url.strip() else None
    if not isinstance(value, dict) or value.get("ignored"):
        return None
    job_url = as_text(value.get("job_url"))
    if not job_url:
        return None
    return JobDescriptor(
        job_url=job_url,
        job_key=as_text(value.get("job_key")),
        job_id=as_text(value.get("job_id")),
        source_domain=as_text(value.get("source_domain")),
    )


def coerce_message_verdict(value: Any) -> MessageVerdict:
    if isinstance(value, MessageVerdict):
        return value
    if not isinstance(value, dict):
        return MessageVerdict()
    by = as_text(value.get("by")) or "none"
    return MessageVerdict(
        reject=bool(value.get("reject")),
        by=by if by in {"heuristic", "ai"} else "none",
        reason=as_text(value.get("reason")) or "",
    )


def coerce_ingest_result(value: Any) -> IngestResult:
    if isinstance(value, IngestResult):
        return value
    data: dict[str, Any] = value if isinstance(value, dict) else {}
    raw_results = data.get("results")
    raw_summary = data.get("source_summary")
    return IngestResult(
        inserted_or_updated=as_count(data.get("inserted_or_updated")),
        inserted_count=as_count(data.get("inserted_count")),
        updated_count=as_count(data.get("updated_count")),
        ignored=as_count(data.get("ignored")),
        link_only=as_count(data.get("link_only")),
        results=[row for row in raw_results if isinstance(row, dict)] if isinstance(raw_results, list) else [],
        source_summary=(
            [row for row in raw_summary if isinstance(row, dict)] if isinstance(raw_summary, list) else None
        ),
    )


def as_text(value: Any) -> str | None:
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def as_count(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return 0
        return int(parsed) if math.isfinite(parsed) else 0
    return 0


def clamp_int(value: Any, *, default: int, minimum: int, maximum: int) -> int:
    if value is None or value == "":
        value = default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return minimum
    if not math.isfinite(parsed):
        return minimum
    return min(maximum, max(minimum, int(round(parsed))))
