from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from jobintake.core.contracts import JobDescriptor, NormalizeURL, call_normalizer, clamp_int
from jobintake.core.urls import (
    KNOWN_JOB_BOARDS,
    expand_tracking_candidates,
    extract_url_from_wrapper_path,
    host_from_url,
    is_http_url,
    looks_like_google_news_wrapper,
    match_known_job_board,
    normalize_source_domain,
    score_candidate,
    unique_texts,
)

FEED_ALLOWED_SOURCE_DOMAINS = frozenset(KNOWN_JOB_BOARDS)
REASON_KEYS = (
    "unsupported_domain",
    "normalize_ignored",
    "unresolved_wrapper",
    "duplicate_candidate",
    "no_url_in_item",
    "ingested",
)

WrapperResolver = Callable[[str], Awaitable[str]]


@dataclass(slots=True)
class CandidateSet:
    candidates: list[str]
    wrapper_detected: bool = False
    wrapper_resolved: bool = False


@dataclass(slots=True)
class ClassificationResult:
    accepted: list[JobDescriptor] = field(default_factory=list)
    ignored_domains_count: int = 0
    reason_buckets: dict[str, int] = field(default_factory=lambda: new_reason_buckets())
    unsupported_domain_by_host: dict[str, int] = field(default_factory=dict)
    rejected_url_samples: list[dict[str, str]] = field(default_factory=list)
    sample_candidates: list[str] = field(default_factory=list)

    @property
    def job_urls(self) -> list[str]:
        return [descriptor.job_url for descriptor in self.accepted]


class UrlClassifier:
    """Turns an item's raw URLs into a deduplicated, ranked list of job descriptors.

    With a normalizer each raw URL expands into candidates (the URL itself, then
    destinations embedded in tracking parameters, then resolved news wrappers)
    that are offered to the normalizer in order until one is accepted. Without a
    normalizer only URLs already shaped like known job-board postings pass.
    """

    def __init__(
        self,
        normalize: NormalizeURL | None,
        *,
        allowed_source_domains: Iterable[str] | None = None,
        wrapper_resolver: WrapperResolver | None = None,
        max_candidate_attempts: int = 12,
        sample_limit: int = 5,
    ) -> None:
        self.normalize = normalize
        self.allowed_source_domains = frozenset(allowed_source_domains) if allowed_source_domains else None
        self.wrapper_resolver = wrapper_resolver
        self.max_candidate_attempts = clamp_int(max_candidate_attempts, default=12, minimum=1, maximum=50)
        self.sample_limit = clamp_int(sample_limit, default=5, minimum=1, maximum=20)

    async def classify(self, raw_urls: Iterable[str]) -> ClassificationResult:
        result = ClassificationResult()
        for raw_url in unique_texts(raw_urls):
            if self.normalize is None:
                descriptor = self._match_structurally(raw_url, result)
            else:
                descriptor = await self._accept_first_candidate(self.normalize, raw_url, result)
            if descriptor is None:
                result.ignored_domains_count += 1
                continue
            self._add_deduplicated(descriptor, result)

        result.accepted = sorted(result.accepted, key=score_candidate, reverse=True)
        for descriptor in result.accepted:
            if len(result.sample_candidates) >= self.sample_limit:
                break
            if descriptor.job_url not in result.sample_candidates:
                result.sample_candidates.append(descriptor.job_url)
        return result

    async def build_candidates(self, raw_url: str) -> CandidateSet:
        out: list[str] = []
        seen: set[str] = set()

        def add_all(values: Iterable[str]) -> None:
            for value in values:
                if is_http_url(value) and value not in seen:
                    seen.add(value)
                    out.append(value)

        add_all(expand_tracking_candidates(raw_url))
        candidate_set = CandidateSet(candidates=out, wrapper_detected=looks_like_google_news_wrapper(raw_url))
        if candidate_set.wrapper_detected:
            from_path = extract_url_from_wrapper_path(raw_url)
            if from_path:
                candidate_set.wrapper_resolved = True
                add_all(expand_tracking_candidates(from_path))
            if self.wrapper_resolver is not None:
                resolved = await self.wrapper_resolver(raw_url)
                if resolved:
                    candidate_set.wrapper_resolved = True
                    add_all(expand_tracking_candidates(resolved))

        candidate_set.candidates = out[: self.max_candidate_attempts]
        return candidate_set

    async def _accept_first_candidate(
        self,
        normalize: NormalizeURL,
        raw_url: str,
        result: ClassificationResult,
    ) -> JobDescriptor | None:
        candidate_set = await self.build_candidates(raw_url)
        for candidate in candidate_set.candidates:
            descriptor = await call_normalizer(normalize, candidate)
            if descriptor is None:
                result.reason_buckets["normalize_ignored"] += 1
                self._sample_rejection(result, "normalize_ignored", candidate)
                continue

            source_domain = normalize_source_domain(descriptor.source_domain)
            if self.allowed_source_domains is not None and source_domain not in self.allowed_source_domains:
                result.reason_buckets["unsupported_domain"] += 1
                host = host_from_url(descriptor.job_url) or host_from_url(candidate) or "unknown"
                increment_count(result.unsupported_domain_by_host, host)
                self._sample_rejection(result, "unsupported_domain", descriptor.job_url or candidate)
                continue

            return JobDescriptor(
                job_url=descriptor.job_url,
                job_key=descriptor.job_key,
                job_id=descriptor.job_id,
                source_domain=source_domain,
            )

        if candidate_set.wrapper_detected and not candidate_set.wrapper_resolved:
            result.reason_buckets["unresolved_wrapper"] += 1
            self._sample_rejection(result, "unresolved_wrapper", raw_url)
        return None

    def _match_structurally(self, raw_url: str, result: ClassificationResult) -> JobDescriptor | None:
        job_url = match_known_job_board(raw_url)
        if job_url is None:
            result.reason_buckets["unsupported_domain"] += 1
            increment_count(result.unsupported_domain_by_host, host_from_url(raw_url) or "unknown")
            self._sample_rejection(result, "unsupported_domain", raw_url)
            return None
        return JobDescriptor(job_url=job_url, source_domain=normalize_source_domain(host_from_url(job_url)))

    def _add_deduplicated(self, descriptor: JobDescriptor, result: ClassificationResult) -> None:
        for index, existing in enumerate(result.accepted):
            same_key = bool(descriptor.job_key) and descriptor.job_key == existing.job_key
            if not same_key and descriptor.job_url != existing.job_url:
                continue
            result.reason_buckets["duplicate_candidate"] += 1
            self._sample_rejection(result, "duplicate_candidate", descriptor.job_url)
            # The stronger-looking duplicate takes the earlier slot; ties keep the first seen.
            if score_candidate(descriptor) > score_candidate(existing):
                result.accepted[index] = descriptor
            return
        result.accepted.append(descriptor)

    def _sample_rejection(self, result: ClassificationResult, reason: str, url: str) -> None:
        push_rejected_sample(result.rejected_url_samples, {"reason": reason, "url": url}, self.sample_limit)


def new_reason_buckets() -> dict[str, int]:
    return {key: 0 for key in REASON_KEYS}


def merge_reason_buckets(target: dict[str, int], source: dict[str, int]) -> None:
    for key in REASON_KEYS:
        target[key] = target.get(key, 0) + int(source.get(key, 0))


def increment_count(target: dict[str, int], key: str, by: int = 1) -> None:
    normalized = key.strip().lower()
    if normalized:
        target[normalized] = target.get(normalized, 0) + by


def merge_count_map(target: dict[str, int], source: dict[str, int]) -> None:
    for key, value in source.items():
        increment_count(target, key, int(value))


def push_rejected_sample(target: list[dict[str, str]], sample: dict[str, str], limit: int) -> None:
    if len(target) >= limit:
        return
    reason = sample.get("reason", "").strip()
    url = sample.get("url", "").strip()
    if not reason or not is_http_url(url):
        return
    if any(row["reason"] == reason and row["url"] == url for row in target):
        return
    target.append({"reason": reason, "url": url})


def push_unique_limited(target: list[str], values: Iterable[str], limit: int) -> None:
    for value in values:
        text = value.strip()
        if not text or text in target:
            continue
        if len(target) >= limit:
            break
        target.append(text)
