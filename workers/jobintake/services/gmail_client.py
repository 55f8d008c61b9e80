from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

import httpx

from jobintake.core.contracts import as_count, as_text
from jobintake.core.errors import UpstreamFetchError
from jobintake.core.text import html_to_text

logger = logging.getLogger(__name__)

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1/users/me"


@dataclass(slots=True)
class GmailMessage:
    msg_id: str
    thread_id: str | None
    internal_date: int
    subject: str
    from_email: str
    email_text: str
    email_html: str
    combined_text: str


class GmailClient:
    def __init__(self, client: httpx.AsyncClient, access_token: str, base_url: str = GMAIL_API_BASE_URL) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.headers = {"Authorization": f"Bearer {access_token}"}

    async def list_message_ids(self, query: str, max_results: int) -> list[str]:
        try:
            response = await self.client.get(
                f"{self.base_url}/messages",
                params={"q": query, "maxResults": str(max_results)},
                headers=self.headers,
            )
        except httpx.HTTPError as exc:
            raise UpstreamFetchError(f"Gmail list failed: {exc}") from exc
        if not response.is_success:
            raise UpstreamFetchError(
                f"Gmail list failed: {response.status_code} {response.text[:300]}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamFetchError(
                f"Gmail list returned invalid json: {exc}",
                status_code=response.status_code,
            ) from exc
        messages = payload.get("messages") if isinstance(payload, dict) else None
        if not isinstance(messages, list):
            return []
        return [str(row.get("id") or "").strip() if isinstance(row, dict) else "" for row in messages]

    async def get_message(self, msg_id: str) -> dict[str, Any] | None:
        """Fetch one message in ``full`` format; ``None`` when the fetch fails."""
        try:
            response = await self.client.get(
                f"{self.base_url}/messages/{quote(msg_id, safe='')}",
                params={"format": "full"},
                headers=self.headers,
            )
        except httpx.HTTPError as exc:
            logger.warning("gmail message fetch failed msg_id=%s: %s", msg_id, exc)
            return None
        if not response.is_success:
            logger.warning("gmail message fetch failed msg_id=%s status=%s", msg_id, response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("gmail message fetch returned invalid json msg_id=%s", msg_id)
            return None
        return payload if isinstance(payload, dict) else None


def parse_gmail_message(message: dict[str, Any]) -> GmailMessage:
    raw_payload = message.get("payload")
    payload: dict[str, Any] = raw_payload if isinstance(raw_payload, dict) else {}

    text_parts: list[str] = []
    html_parts: list[str] = []
    _collect_bodies(payload, text_parts, html_parts)
    email_text = "\n".join(text_parts).strip()
    email_html = "\n".join(html_parts).strip()

    return GmailMessage(
        msg_id=as_text(message.get("id")) or "",
        thread_id=as_text(message.get("threadId")),
        internal_date=as_count(message.get("internalDate")),
        subject=get_header(payload, "Subject"),
        from_email=get_header(payload, "From"),
        email_text=email_text,
        email_html=email_html,
        combined_text="\n".join([email_text, html_to_text(email_html)]),
    )


def get_header(payload: dict[str, Any], name: str) -> str:
    headers = payload.get("headers")
    if not isinstance(headers, list):
        return ""
    wanted = name.lower()
    for header in headers:
        if isinstance(header, dict) and str(header.get("name") or "").lower() == wanted:
            return str(header.get("value") or "").strip()
    return ""


def decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
    except (binascii.Error, ValueError):
        logger.debug("skipping undecodable message part")
        return ""
    return raw.decode("utf-8", errors="replace")


def _collect_bodies(part: Any, text_parts: list[str], html_parts: list[str]) -> None:
    if not isinstance(part, dict):
        return
    mime_type = str(part.get("mimeType") or "").lower()
    body = part.get("body")
    data = str(body.get("data") or "") if isinstance(body, dict) else ""
    if data:
        decoded = decode_base64url(data)
        if mime_type == "text/plain":
            text_parts.append(decoded)
        elif mime_type == "text/html":
            html_parts.append(decoded)

    children = part.get("parts")
    if isinstance(children, list):
        for child in children:
            _collect_bodies(child, text_parts, html_parts)
