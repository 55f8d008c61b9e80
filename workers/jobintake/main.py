from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from jobintake.core.config import Settings, get_settings
from jobintake.core.crypto import SecretBox
from jobintake.core.errors import ConfigurationError, VaultNotConnectedError
from jobintake.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from jobintake.jobs.gmail_poll import poll_gmail_and_ingest
from jobintake.jobs.rss_poll import parse_feed_urls, poll_rss_feeds_and_ingest
from jobintake.services.ingest_client import IngestApiClient
from jobintake.services.message_classifier import HeuristicMessageClassifier
from jobintake.services.normalizer import JobUrlNormalizer
from jobintake.services.state_repository import IngestStateRepository, get_state_repository
from jobintake.services.token_vault import TokenVault

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_token_vault(settings: Settings, repository: IngestStateRepository) -> TokenVault | None:
    """Mailbox polling is optional; it is disabled when its credentials are incomplete."""
    try:
        return TokenVault(
            repository,
            client_id=settings.gmail_client_id,
            client_secret=settings.gmail_client_secret,
            secret_box=SecretBox.from_base64(settings.token_enc_key),
            timeout_seconds=settings.http_timeout_seconds,
        )
    except ConfigurationError as exc:
        logger.info("mailbox polling disabled: %s", exc)
        return None


async def run_poll_cycle(
    settings: Settings,
    repository: IngestStateRepository,
    token_vault: TokenVault | None,
    ingest: IngestApiClient,
) -> None:
    normalize = JobUrlNormalizer()
    if token_vault is not None:
        try:
            summary = await poll_gmail_and_ingest(
                repository=repository,
                token_vault=token_vault,
                ingest=ingest,
                normalize=normalize,
                classify_message=HeuristicMessageClassifier(),
                settings=settings,
            )
            logger.info("gmail summary: %s", summary)
        except VaultNotConnectedError:
            logger.warning("mailbox not connected yet; skipping gmail poll")
        except Exception:
            logger.exception("gmail poll failed")

    if parse_feed_urls(settings.rss_feeds):
        try:
            summary = await poll_rss_feeds_and_ingest(ingest=ingest, normalize=normalize, settings=settings)
            logger.info("rss summary: %s", summary)
        except Exception:
            logger.exception("rss poll failed")


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    repository = get_state_repository()
    token_vault = build_token_vault(settings, repository)
    ingest = IngestApiClient(
        base_url=settings.ingest_api_base_url,
        api_key=settings.ingest_api_key,
    )

    backoff = settings.poll_interval_seconds
    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    await run_poll_cycle(settings, repository, token_vault, ingest)
                backoff = settings.poll_interval_seconds
                await asyncio.sleep(settings.poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("poll cycle failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await repository.close()
        shutdown_worker_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
