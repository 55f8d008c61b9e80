from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import parse_qsl, unquote, urlsplit, urlunsplit

from jobintake.core.contracts import JobDescriptor

URL_IN_TEXT_RE = re.compile(r"https?://[^\s\"'<>)\]]+", re.IGNORECASE)
WRAPPER_URL_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
TRAILING_PUNCTUATION_RE = re.compile(r"[),.;]+$")

# Query parameters tracking/redirect services use to carry the destination, in lookup order.
TRACKING_REDIRECT_PARAMS = (
    "url",
    "u",
    "q",
    "redirect",
    "redirect_url",
    "redirectUrl",
    "target",
    "dest",
    "destination",
    "to",
    "r",
    "href",
    "next",
)

KNOWN_JOB_BOARDS = ("linkedin", "iimjobs", "naukri")

STRICT_DETAIL_PATTERNS: dict[str, re.Pattern[str]] = {
    "linkedin": re.compile(r"linkedin\.com/jobs/view/\d+/?$", re.IGNORECASE),
    "iimjobs": re.compile(r"iimjobs\.com/j/.+-\d+/?$", re.IGNORECASE),
    "naukri": re.compile(r"naukri\.com/job-listings-.+-\d+/?$", re.IGNORECASE),
}


@dataclass(slots=True)
class UrlScan:
    found: list[str]
    unique: list[str]


def scan_urls(text: str | None) -> UrlScan:
    found = []
    for match in URL_IN_TEXT_RE.findall(text or ""):
        cleaned = TRAILING_PUNCTUATION_RE.sub("", match).strip()
        if cleaned:
            found.append(cleaned)
    return UrlScan(found=found, unique=unique_texts(found))


def extract_urls(text: str | None) -> list[str]:
    return scan_urls(text).unique


def unique_texts(values: Iterable[object]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        text = str(value or "").strip()
        if not text or text in seen:
            continue
        seen.add(text)
        out.append(text)
    return out


def is_http_url(value: str | None) -> bool:
    return bool(value) and re.match(r"^https?://", value, re.IGNORECASE) is not None


def host_from_url(url: str | None) -> str:
    try:
        return (urlsplit(str(url or "").strip()).hostname or "").lower()
    except ValueError:
        return ""


def decode_url_safely(value: str | None) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    try:
        return unquote(text.replace("+", "%20"), errors="strict")
    except UnicodeDecodeError:
        return text


def expand_tracking_candidates(raw_url: str) -> list[str]:
    """Return ``raw_url`` followed by destinations embedded in its redirect parameters."""
    out: list[str] = []
    seen: set[str] = set()

    def add(value: str) -> None:
        text = str(value or "").strip()
        if not is_http_url(text) or text in seen:
            return
        seen.add(text)
        out.append(text)

    add(raw_url)
    try:
        parsed = urlsplit(str(raw_url or "").strip())
    except ValueError:
        return out
    if not parsed.scheme or not parsed.netloc:
        return out

    first_values: dict[str, str] = {}
    for key, value in parse_qsl(parsed.query, keep_blank_values=True):
        first_values.setdefault(key, value)

    for key in TRACKING_REDIRECT_PARAMS:
        value = first_values.get(key)
        if not value:
            continue
        decoded_once = decode_url_safely(value)
        decoded_twice = decode_url_safely(decoded_once)
        add(decoded_once)
        add(decoded_twice)
    return out


def match_known_job_board(raw_url: str) -> str | None:
    """Structural matcher used when no normalizer is injected; no redirect unwrapping."""
    try:
        parsed = urlsplit(str(raw_url or "").strip())
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
        return None

    host = (parsed.hostname or "").lower()
    path = parsed.path.lower()
    is_linkedin = "linkedin.com" in host and "/jobs/" in path
    is_iimjobs = "iimjobs.com" in host and "/j/" in path
    is_naukri = "naukri.com" in host and "/job-listings-" in path
    if not (is_linkedin or is_iimjobs or is_naukri):
        return None

    without_fragment = urlunsplit((parsed.scheme.lower(), parsed.netloc.lower(), parsed.path, parsed.query, ""))
    return without_fragment.rstrip("/")


def normalize_source_domain(value: str | None) -> str:
    raw = str(value or "").strip().lower()
    if not raw:
        return "unknown"
    for board in KNOWN_JOB_BOARDS:
        if board in raw:
            return board
    return raw[4:] if raw.startswith("www.") else raw


def score_candidate(descriptor: JobDescriptor) -> int:
    source_domain = str(descriptor.source_domain or "").lower()
    pattern = STRICT_DETAIL_PATTERNS.get(source_domain)
    strict = 1 if pattern is not None and pattern.search(descriptor.job_url) else 0
    has_job_id = 1 if descriptor.job_id else 0
    return strict * 10 + has_job_id * 5


def looks_like_google_news_wrapper(url: str | None) -> bool:
    try:
        parsed = urlsplit(str(url or "").strip())
    except ValueError:
        return False
    host = (parsed.hostname or "").lower()
    return "news.google." in host and re.search(r"/rss/articles/", parsed.path, re.IGNORECASE) is not None


def extract_url_from_wrapper_path(url: str) -> str:
    try:
        parsed = urlsplit(str(url or "").strip())
    except ValueError:
        return ""
    # Only the path and query can embed a destination; the wrapper's own origin never does.
    return first_http_url(decode_url_safely(f"{parsed.path}?{parsed.query}"))


def first_http_url(text: str | None) -> str:
    match = WRAPPER_URL_RE.search(text or "")
    if not match:
        return ""
    return TRAILING_PUNCTUATION_RE.sub("", match.group(0))
