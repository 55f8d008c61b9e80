from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from jobintake.core.contracts import as_count, as_text
from jobintake.core.crypto import SecretBox
from jobintake.core.errors import ConfigurationError, TokenRefreshError, VaultNotConnectedError
from jobintake.services.state_repository import IngestStateRepository, TokenRecord

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
ACCESS_TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)
DEFAULT_ACCESS_TOKEN_TTL_SECONDS = 3600


class TokenVault:
    """Mailbox OAuth credentials: encrypted refresh token plus a cached access token.

    The refresh is a read-modify-write of a single row with last-writer-wins
    semantics; callers must not run two polls of the same mailbox concurrently.
    """

    def __init__(
        self,
        repository: IngestStateRepository,
        *,
        client_id: str | None,
        client_secret: str | None,
        secret_box: SecretBox,
        client: httpx.AsyncClient | None = None,
        token_url: str = GOOGLE_TOKEN_URL,
        timeout_seconds: float = 10.0,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        if not (client_id or "").strip() or not (client_secret or "").strip():
            raise ConfigurationError("JOBINTAKE_GMAIL_CLIENT_ID and JOBINTAKE_GMAIL_CLIENT_SECRET are required")
        self.repository = repository
        self.client_id = client_id.strip()
        self.client_secret = client_secret.strip()
        self.secret_box = secret_box
        self.client = client
        self.token_url = token_url
        self.timeout_seconds = timeout_seconds
        self._now = now or (lambda: datetime.now(timezone.utc))

    async def get_access_token(self) -> str:
        record = await self.repository.get_token_record()
        if record is None or not record.refresh_token_enc:
            raise VaultNotConnectedError("mailbox is not connected; store a refresh token first")

        now = self._now()
        expires_at = _as_utc(record.access_expires_at)
        if record.access_token and expires_at is not None and expires_at > now + ACCESS_TOKEN_EXPIRY_MARGIN:
            return record.access_token

        refresh_token = self.secret_box.decrypt(record.refresh_token_enc)
        payload = await self._request_refresh(refresh_token)
        access_token = as_text(payload.get("access_token"))
        if not access_token:
            raise TokenRefreshError("token endpoint response has no access_token")

        expires_in = as_count(payload.get("expires_in")) or DEFAULT_ACCESS_TOKEN_TTL_SECONDS
        rotated_refresh_token = as_text(payload.get("refresh_token"))
        next_refresh_token_enc = (
            self.secret_box.encrypt(rotated_refresh_token) if rotated_refresh_token else record.refresh_token_enc
        )

        await self.repository.put_token_record(
            TokenRecord(
                refresh_token_enc=next_refresh_token_enc,
                access_token=access_token,
                access_expires_at=now + timedelta(seconds=expires_in),
            )
        )
        logger.info(
            "refreshed mailbox access token expires_in=%s rotated_refresh_token=%s",
            expires_in,
            bool(rotated_refresh_token),
        )
        return access_token

    async def store_tokens(
        self,
        *,
        refresh_token: str | None = None,
        access_token: str | None = None,
        expires_in: int | None = None,
    ) -> None:
        if refresh_token:
            refresh_token_enc: str | None = self.secret_box.encrypt(refresh_token)
        else:
            previous = await self.repository.get_token_record()
            refresh_token_enc = previous.refresh_token_enc if previous is not None else None
        if not refresh_token_enc:
            raise VaultNotConnectedError("no refresh token available; re-run authorization with consent")

        expires_at = self._now() + timedelta(seconds=expires_in) if access_token and expires_in else None
        await self.repository.put_token_record(
            TokenRecord(
                refresh_token_enc=refresh_token_enc,
                access_token=access_token,
                access_expires_at=expires_at,
            )
        )

    async def _request_refresh(self, refresh_token: str) -> dict[str, Any]:
        form = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        try:
            if self.client is not None:
                response = await self.client.post(self.token_url, data=form)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                    response = await temp_client.post(self.token_url, data=form)
        except httpx.HTTPError as exc:
            raise TokenRefreshError(f"token endpoint unreachable: {exc}") from exc

        if not response.is_success:
            raise TokenRefreshError(
                f"failed to refresh mailbox access token: {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        return payload if isinstance(payload, dict) else {}


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
