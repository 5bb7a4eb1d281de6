"""
Dependency wiring — builds every engine component exactly once.

``build_engine(settings)`` is called from the FastAPI lifespan (and from
tests, with injected backends/channels). Nothing here is created at import
time; routes reach the running engine through ``request.app.state``.

    settings ─► storage backends ─► SourceRouter ─► AlertStore
                channel clients ──► channels ──────► NotificationDispatcher
                                                     SafetySignalScanner
                                                     EmergencyOrchestrator
                                                     ScanScheduler
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError

from backend.app.alerts.alert_store import AlertStore
from backend.app.alerts.channels.base import Channel
from backend.app.alerts.channels.email_alert import EmailChannel, SmtpEmailClient
from backend.app.alerts.channels.sms_gateway import SmsChannel, TwilioSmsClient
from backend.app.alerts.channels.web_push import FcmPushClient, PushChannel
from backend.app.alerts.channels.webhook import WebhookChannel, WebhookClient
from backend.app.alerts.dispatcher import NotificationDispatcher
from backend.app.alerts.orchestrator import EmergencyOrchestrator
from backend.app.core.config import Settings
from backend.app.core.database import create_engine
from backend.app.monitoring.safety_scanner import SafetySignalScanner
from backend.app.monitoring.scheduler import ScanScheduler
from backend.app.storage.memory_backend import MemoryBackend
from backend.app.storage.rest_backend import RestBackend
from backend.app.storage.source_router import SourceRouter
from backend.app.storage.sql_backend import SqlBackend

logger = logging.getLogger(__name__)


@dataclass
class SafetyEngine:
    """Every long-lived component of the running service."""
    settings: Settings
    router: SourceRouter
    store: AlertStore
    dispatcher: NotificationDispatcher
    scanner: SafetySignalScanner
    orchestrator: EmergencyOrchestrator
    scheduler: ScanScheduler

    async def close(self) -> None:
        await self.scheduler.stop()
        await self.orchestrator.close()


def build_router(config: Settings) -> SourceRouter:
    """Storage backends per ``STORAGE_MODE``."""
    mode = config.STORAGE_MODE.lower()
    if mode == "memory":
        logger.info("Storage: in-memory backend (data is not persisted)")
        return SourceRouter(MemoryBackend(), timeout_seconds=config.STORAGE_TIMEOUT_SECONDS)
    if mode != "remote":
        raise ValueError(f"Unknown STORAGE_MODE '{config.STORAGE_MODE}' (memory | remote)")

    secondary = SqlBackend(create_engine(config))
    if not config.PRIMARY_API_URL:
        logger.warning("PRIMARY_API_URL not set; running on the secondary store alone")
        return SourceRouter(secondary, timeout_seconds=config.STORAGE_TIMEOUT_SECONDS)

    primary = RestBackend(
        config.PRIMARY_API_URL,
        config.PRIMARY_API_KEY,
        timeout_seconds=config.STORAGE_TIMEOUT_SECONDS,
    )
    logger.info("Storage: primary %s, secondary PostgreSQL", config.PRIMARY_API_URL)
    return SourceRouter(primary, secondary, timeout_seconds=config.STORAGE_TIMEOUT_SECONDS)


def build_channels(config: Settings) -> List[Channel]:
    """One channel per transport; unconfigured ones have no client."""
    timeout = config.DISPATCH_TIMEOUT_SECONDS
    maps = config.MAPS_BASE_URL

    sms_client = (
        TwilioSmsClient(
            config.TWILIO_ACCOUNT_SID,
            config.TWILIO_AUTH_TOKEN,
            config.TWILIO_FROM_NUMBER,
            api_base=config.TWILIO_API_BASE,
            timeout_seconds=timeout,
        )
        if config.sms_enabled else None
    )
    email_client = (
        SmtpEmailClient(
            config.SMTP_HOST,
            config.SMTP_PORT,
            username=config.SMTP_USER,
            password=config.SMTP_PASSWORD,
            from_address=config.SMTP_FROM,
            use_tls=config.SMTP_USE_TLS,
            timeout_seconds=timeout,
        )
        if config.email_enabled else None
    )
    webhook_client = (
        WebhookClient(token=config.EMERGENCY_WEBHOOK_TOKEN, timeout_seconds=timeout)
        if config.webhook_enabled else None
    )
    push_client = FcmPushClient(config.FCM_CREDENTIALS_FILE) if config.push_enabled else None

    channels: List[Channel] = [
        SmsChannel(sms_client, maps_base_url=maps),
        EmailChannel(email_client, maps_base_url=maps),
        PushChannel(push_client, maps_base_url=maps),
        WebhookChannel(webhook_client, config.EMERGENCY_WEBHOOK_URL, maps_base_url=maps),
    ]
    missing = [c.channel.value for c in channels if not c.is_configured]
    if missing:
        logger.warning("Channels without credentials (attempts will be skipped): %s", missing)
    return channels


def build_engine(
    config: Settings,
    *,
    router: Optional[SourceRouter] = None,
    channels: Optional[List[Channel]] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> SafetyEngine:
    """Wire the full engine; ``router``/``channels``/``clock`` override for tests."""
    router = router or build_router(config)
    channels = channels if channels is not None else build_channels(config)
    clock_kw = {"clock": clock} if clock else {}

    store = AlertStore(router, **clock_kw)
    dispatcher = NotificationDispatcher(
        store,
        channels,
        timeout_seconds=config.DISPATCH_TIMEOUT_SECONDS,
        max_concurrency=config.DISPATCH_MAX_CONCURRENCY,
        settle_attempts=config.DISPATCH_SETTLE_ATTEMPTS,
        settle_backoff_seconds=config.DISPATCH_SETTLE_BACKOFF_SECONDS,
        **clock_kw,
    )
    scanner = SafetySignalScanner(
        router,
        inactivity_threshold=timedelta(minutes=config.INACTIVITY_THRESHOLD_MINUTES),
        zone_refresh_interval=timedelta(minutes=config.ZONE_REFRESH_MINUTES),
        **clock_kw,
    )
    orchestrator = EmergencyOrchestrator(
        router,
        store,
        dispatcher,
        scanner,
        stalled_dispatch_after=timedelta(minutes=config.STALLED_DISPATCH_MINUTES),
        **clock_kw,
    )
    scheduler = ScanScheduler(
        orchestrator.run_sweep,
        interval=timedelta(minutes=config.SCAN_INTERVAL_MINUTES),
    )
    return SafetyEngine(
        settings=config,
        router=router,
        store=store,
        dispatcher=dispatcher,
        scanner=scanner,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


async def prepare_storage(engine: SafetyEngine) -> None:
    """Create the SQL tables on startup when ``DATABASE_AUTO_CREATE`` is set."""
    if not engine.settings.DATABASE_AUTO_CREATE:
        return
    for backend in (engine.router.primary, engine.router.secondary):
        if isinstance(backend, SqlBackend):
            try:
                await backend.create_tables()
            except (SQLAlchemyError, OSError) as exc:
                logger.error("Could not create tables on %s: %s", backend.name, exc,
                             extra={"backend": backend.name})


# ── FastAPI dependencies ──

def get_engine(request: Request) -> SafetyEngine:
    return request.app.state.engine


def get_orchestrator(request: Request) -> EmergencyOrchestrator:
    return request.app.state.engine.orchestrator
