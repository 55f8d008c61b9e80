from __future__ import annotations

import re
import warnings
from typing import Iterable

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

from jobintake.core.urls import unique_texts

BLOCK_TAGS = ["p", "div", "li", "h1", "h2", "h3", "tr"]

_SPACES_AROUND_NEWLINE_RE = re.compile(r"[ \t]*\n[ \t]*")
_EXTRA_NEWLINES_RE = re.compile(r"\n{3,}")
_EXTRA_SPACES_RE = re.compile(r"[ \t]{2,}")
_KEYWORD_SPLIT_RE = re.compile(r"\r?\n|,")

# Feed summaries are often a bare URL; bs4 warns about those but parses them fine.
warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)


def html_to_text(html: str | None) -> str:
    """Render HTML as readable plain text.

    Scripts and styles are dropped, ``<br>`` and the end of block elements become
    line breaks, list items get a ``- `` prefix and entities are decoded.
    """
    if not html or not html.strip():
        return ""

    soup = BeautifulSoup(html, "html.parser")
    for node in soup.find_all(["script", "style"]):
        node.decompose()
    for node in soup.find_all("br"):
        node.replace_with("\n")
    for node in soup.find_all("li"):
        node.insert(0, "- ")
    for node in soup.find_all(BLOCK_TAGS):
        node.append("\n")

    text = soup.get_text(" ").replace("\xa0", " ")
    text = _SPACES_AROUND_NEWLINE_RE.sub("\n", text)
    text = _EXTRA_NEWLINES_RE.sub("\n\n", text)
    text = _EXTRA_SPACES_RE.sub(" ", text)
    return text.strip()


def parse_keyword_list(raw: str | Iterable[object] | None) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        parts: Iterable[object] = _KEYWORD_SPLIT_RE.split(raw)
    else:
        parts = raw
    return unique_texts(str(part or "").strip().lower() for part in parts)


def contains_any_keyword(text: str, keywords: Iterable[str]) -> bool:
    lowered = (text or "").lower()
    return any(keyword and keyword in lowered for keyword in keywords)
