from __future__ import annotations

from jobintake.core.contracts import JobDescriptor
from jobintake.core.urls import (
    decode_url_safely,
    expand_tracking_candidates,
    extract_url_from_wrapper_path,
    looks_like_google_news_wrapper,
    match_known_job_board,
    normalize_source_domain,
    scan_urls,
    score_candidate,
)


def test_scan_urls_trims_trailing_punctuation_and_keeps_duplicates_in_found() -> None:
    scan = scan_urls("Apply (https://www.linkedin.com/jobs/view/1/). Or https://www.linkedin.com/jobs/view/1/, today")

    assert scan.found == ["https://www.linkedin.com/jobs/view/1/", "https://www.linkedin.com/jobs/view/1/"]
    assert scan.unique == ["https://www.linkedin.com/jobs/view/1/"]


def test_expand_tracking_candidates_unwraps_redirect_parameters_in_fixed_order() -> None:
    raw = (
        "https://r.example.com/click?next=https%3A%2F%2Fb.example.com%2F"
        "&url=https%3A%2F%2Fwww.linkedin.com%2Fjobs%2Fview%2F12345&to=ftp%3A%2F%2Fexample.com"
    )

    assert expand_tracking_candidates(raw) == [
        raw,
        "https://www.linkedin.com/jobs/view/12345",
        "https://b.example.com/",
    ]


def test_expand_tracking_candidates_handles_double_encoding() -> None:
    raw = "https://r.example.com/c?u=https%253A%252F%252Fwww.naukri.com%252Fjob-listings-x-1"

    assert expand_tracking_candidates(raw) == [raw, "https://www.naukri.com/job-listings-x-1"]


def test_expand_tracking_candidates_ignores_non_absolute_input() -> None:
    assert expand_tracking_candidates("/click?url=https://example.com") == []


def test_decode_url_safely_treats_plus_as_space_and_keeps_bad_sequences() -> None:
    assert decode_url_safely("Backend+Engineer%20Role") == "Backend Engineer Role"
    assert decode_url_safely("%E0%A4%A") == "%E0%A4%A"
    assert decode_url_safely(None) == ""


def test_match_known_job_board_accepts_only_posting_shapes() -> None:
    assert (
        match_known_job_board("https://www.Naukri.com/job-listings-data-engineer-123456/#top")
        == "https://www.naukri.com/job-listings-data-engineer-123456"
    )
    assert match_known_job_board("https://www.iimjobs.com/j/product-manager-99") == (
        "https://www.iimjobs.com/j/product-manager-99"
    )
    assert match_known_job_board("https://www.linkedin.com/feed/") is None
    assert match_known_job_board("https://example.com/jobs/1") is None
    assert match_known_job_board("mailto:jobs@linkedin.com") is None


def test_normalize_source_domain() -> None:
    assert normalize_source_domain("www.LinkedIn.com") == "linkedin"
    assert normalize_source_domain("in.naukri.com") == "naukri"
    assert normalize_source_domain("www.example.com") == "example.com"
    assert normalize_source_domain("") == "unknown"
    assert normalize_source_domain(None) == "unknown"


def test_score_candidate_rewards_strict_shape_and_job_id() -> None:
    strict_with_id = JobDescriptor(
        job_url="https://www.linkedin.com/jobs/view/123/",
        job_id="123",
        source_domain="linkedin",
    )
    strict_without_id = JobDescriptor(
        job_url="https://www.iimjobs.com/j/analyst-42",
        source_domain="iimjobs",
    )
    loose = JobDescriptor(job_url="https://www.naukri.com/company-jobs", source_domain="naukri")

    assert score_candidate(strict_with_id) == 15
    assert score_candidate(strict_without_id) == 10
    assert score_candidate(loose) == 0


def test_google_news_wrapper_detection_and_path_extraction() -> None:
    wrapper = "https://news.google.com/rss/articles/CBMiabc?oc=5&url=https%3A%2F%2Fwww.naukri.com%2Fjob-listings-x-1"

    assert looks_like_google_news_wrapper(wrapper)
    assert not looks_like_google_news_wrapper("https://news.google.com/topics/abc")
    assert not looks_like_google_news_wrapper("https://example.com/rss/articles/abc")
    assert extract_url_from_wrapper_path(wrapper) == "https://www.naukri.com/job-listings-x-1"
    assert extract_url_from_wrapper_path("https://news.google.com/rss/articles/CBMiabc") == ""
