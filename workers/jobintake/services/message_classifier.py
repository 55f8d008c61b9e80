from __future__ import annotations

from typing import Iterable

from jobintake.core.contracts import MessageFeatures, MessageVerdict
from jobintake.core.text import parse_keyword_list

DEFAULT_PROMOTIONAL_SUBJECT_KEYWORDS = (
    "% off",
    "discount",
    "webinar",
    "newsletter",
    "try premium",
    "free trial",
    "limited time",
    "upgrade",
)
DEFAULT_PROMOTIONAL_SENDER_KEYWORDS = (
    "newsletter@",
    "marketing@",
    "promotions@",
    "offers@",
    "news@",
)


class HeuristicMessageClassifier:
    """Flags marketing mail that carries no job-board links.

    A message is only rejected when it has no job-domain URLs and its subject or
    sender matches one of the promotional keywords.
    """

    def __init__(
        self,
        *,
        subject_keywords: Iterable[str] | str | None = None,
        sender_keywords: Iterable[str] | str | None = None,
    ) -> None:
        self.subject_keywords = parse_keyword_list(
            subject_keywords if subject_keywords is not None else DEFAULT_PROMOTIONAL_SUBJECT_KEYWORDS
        )
        self.sender_keywords = parse_keyword_list(
            sender_keywords if sender_keywords is not None else DEFAULT_PROMOTIONAL_SENDER_KEYWORDS
        )

    async def __call__(self, features: MessageFeatures) -> MessageVerdict:
        return self.classify(features)

    def classify(self, features: MessageFeatures) -> MessageVerdict:
        if features.urls_job_domains_total > 0:
            return MessageVerdict()

        subject = features.subject.lower()
        for keyword in self.subject_keywords:
            if keyword in subject:
                return MessageVerdict(reject=True, by="heuristic", reason=f"promotional_subject:{keyword}")

        sender = features.from_email.lower()
        for keyword in self.sender_keywords:
            if keyword in sender:
                return MessageVerdict(reject=True, by="heuristic", reason=f"promotional_sender:{keyword}")
        return MessageVerdict()
