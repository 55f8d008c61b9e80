from __future__ import annotations

import hashlib
import re
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from jobintake.core.contracts import JobDescriptor

_LINKEDIN_VIEW_RE = re.compile(r"/jobs/view/(\d+)", re.IGNORECASE)
_TRAILING_ID_RE = re.compile(r"-(\d+)$")


class JobUrlNormalizer:
    """Default URL oracle for the known job boards.

    Hosts outside LinkedIn, iimjobs and Naukri are ignored unless
    ``accept_unknown_hosts`` is set, in which case they pass through with their
    host as the source domain.
    """

    def __init__(self, *, accept_unknown_hosts: bool = False) -> None:
        self.accept_unknown_hosts = accept_unknown_hosts

    async def __call__(self, url: str) -> JobDescriptor | None:
        return normalize_job_url(url, accept_unknown_hosts=self.accept_unknown_hosts)


def normalize_job_url(raw_url: str, *, accept_unknown_hosts: bool = False) -> JobDescriptor | None:
    try:
        parsed = urlsplit(str(raw_url or "").strip())
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
        return None

    host = (parsed.hostname or "").lower()
    path = parsed.path.lower()
    if "naukri.com" in host and "/mnjuser/inbox" in path:
        return None

    if "linkedin.com" in host:
        job_id = _linkedin_job_id(parsed.query, parsed.path)
        if job_id:
            return JobDescriptor(
                job_url=f"https://www.linkedin.com/jobs/view/{job_id}/",
                job_key=_sha1_hex(f"linkedin|{job_id}"),
                job_id=job_id,
                source_domain="linkedin",
            )
        canonical = _strip_query_and_fragment(parsed.scheme, parsed.netloc, parsed.path)
        return JobDescriptor(job_url=canonical, job_key=_sha1_hex(f"url|{canonical}"), source_domain="linkedin")

    for board, marker in (("iimjobs", "iimjobs.com"), ("naukri", "naukri.com")):
        if marker not in host:
            continue
        canonical = _strip_query_and_fragment(parsed.scheme, parsed.netloc, parsed.path)
        last_segment = next((part for part in reversed(canonical.split("/")) if part), "")
        match = _TRAILING_ID_RE.search(last_segment)
        job_id = match.group(1) if match else None
        return JobDescriptor(
            job_url=canonical,
            job_key=_sha1_hex(f"{board}|{job_id}" if job_id else f"url|{canonical}"),
            job_id=job_id,
            source_domain=board,
        )

    if not accept_unknown_hosts:
        return None
    canonical = _strip_query_and_fragment(parsed.scheme, parsed.netloc, parsed.path)
    return JobDescriptor(job_url=canonical, job_key=_sha1_hex(f"url|{canonical}"), source_domain=host)


def _linkedin_job_id(query: str, path: str) -> str | None:
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key.lower() == "currentjobid":
            return value if value.isdigit() else None
    match = _LINKEDIN_VIEW_RE.search(path)
    return match.group(1) if match else None


def _strip_query_and_fragment(scheme: str, netloc: str, path: str) -> str:
    return urlunsplit((scheme.lower(), netloc.lower(), path, "", "")).rstrip("/")


def _sha1_hex(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()
