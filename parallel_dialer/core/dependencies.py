"""FastAPI dependencies."""
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from parallel_dialer.core.config import Settings, settings
from parallel_dialer.core.errors import InvalidTokenError
from parallel_dialer.core.security import API_PURPOSE, verify_token
from parallel_dialer.db.database import get_session_factory
from parallel_dialer.services.dialer.conference import ConferenceController
from parallel_dialer.services.dialer.initiator import DialInitiator
from parallel_dialer.services.dialer.queue import QueueManager
from parallel_dialer.services.dialer.verification import VerificationService
from parallel_dialer.services.dialer.webhooks import WebhookEventRouter
from parallel_dialer.services.markers.base import MarkerStore
from parallel_dialer.services.markers.in_memory import InMemoryMarkerStore
from parallel_dialer.services.markers.sql import SqlMarkerStore
from parallel_dialer.services.notifications import NotificationHub
from parallel_dialer.services.tasks import BackgroundJobQueue
from parallel_dialer.services.telephony.client import TelephonyClient


@dataclass
class Dialer:
    """The dialer's long-lived services, shared by every request."""

    store: MarkerStore
    telephony: TelephonyClient
    notifier: NotificationHub
    jobs: BackgroundJobQueue
    queue: QueueManager
    conference: ConferenceController
    initiator: DialInitiator
    router: WebhookEventRouter
    verification: VerificationService


def build_dialer(
    store: MarkerStore,
    telephony: TelephonyClient,
    notifier: NotificationHub,
    jobs: BackgroundJobQueue,
    session_factory: async_sessionmaker,
    config: Settings = settings,
) -> Dialer:
    """Wire the dialer services together."""
    queue = QueueManager(store, telephony, notifier, promotion_order=config.promotion_order)
    conference = ConferenceController(
        store,
        telephony,
        notifier,
        queue,
        jobs,
        session_factory,
        ttl_seconds=config.conference_ttl_seconds,
        agent_identity_template=config.agent_identity_template,
    )
    router = WebhookEventRouter(
        queue,
        conference,
        telephony,
        notifier,
        jobs,
        session_factory,
        admit_unknown_answers=config.admit_unknown_answers,
        cancel_ringing_on_human=config.cancel_ringing_on_human,
        hold_message=config.hold_message,
        hold_music_url=config.hold_music_url,
        greeting_url=config.greeting_url,
        auto_record=config.auto_record,
    )
    return Dialer(
        store=store,
        telephony=telephony,
        notifier=notifier,
        jobs=jobs,
        queue=queue,
        conference=conference,
        initiator=DialInitiator(telephony, notifier, max_lines=config.max_lines),
        router=router,
        verification=VerificationService(
            session_factory,
            store,
            queue,
            stale_ringing_minutes=config.stale_ringing_minutes,
            stale_in_progress_minutes=config.stale_in_progress_minutes,
        ),
    )


def create_marker_store(session_factory: async_sessionmaker, config: Settings = settings) -> MarkerStore:
    if config.marker_backend == "memory":
        return InMemoryMarkerStore(ttl_seconds=config.marker_ttl_seconds)
    return SqlMarkerStore(session_factory, ttl_seconds=config.marker_ttl_seconds)


@lru_cache
def get_dialer() -> Dialer:
    """Get the process-wide dialer services."""
    session_factory = get_session_factory()
    return build_dialer(
        store=create_marker_store(session_factory),
        telephony=TelephonyClient(
            settings.twilio_account_sid,
            settings.twilio_auth_token,
            settings.twilio_phone_number,
        ),
        notifier=NotificationHub(),
        jobs=BackgroundJobQueue(
            workers=settings.job_workers,
            max_attempts=settings.job_max_attempts,
            retry_delay_seconds=settings.job_retry_delay_seconds,
        ),
        session_factory=session_factory,
    )


def get_base_url(request: Request) -> str:
    """
    Get the base URL the provider should call back on.

    Uses BASE_URL if set (e.g. behind ngrok or on Railway), otherwise the
    request's own base URL.
    """
    if settings.base_url:
        return settings.base_url.rstrip("/")
    return str(request.base_url).rstrip("/")


def user_from_api_token(token: Optional[str]) -> int:
    try:
        return verify_token(token or "", API_PURPOSE)
    except InvalidTokenError as e:
        raise HTTPException(status_code=401, detail=f"Invalid API token: {e}")


def get_current_user(authorization: Optional[str] = Header(None)) -> int:
    """Resolve the calling user from a ``Bearer`` API token."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return user_from_api_token(authorization[7:].strip())
