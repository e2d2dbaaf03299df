"""Webhook event ledger: de-duplication and failure recording."""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from parallel_dialer.db.models import WebhookEvent

logger = logging.getLogger(__name__)


class WebhookEventLedger:
    """Records each distinct provider callback once."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        event_key: str,
        kind: str,
        user_id: Optional[int],
        call_sid: Optional[str],
    ) -> Optional[WebhookEvent]:
        """Insert a ledger row. Returns None if this callback was seen before."""
        event = WebhookEvent(event_key=event_key, kind=kind, user_id=user_id, call_sid=call_sid)
        self.db.add(event)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            logger.info(f"[WEBHOOK LEDGER] Duplicate delivery ignored - Key: {event_key}")
            return None
        await self.db.refresh(event)
        return event

    async def mark_processed(self, event: WebhookEvent) -> None:
        event.status = "processed"
        event.processed_at = datetime.utcnow()
        await self.db.commit()

    async def mark_failed(self, event: WebhookEvent, error: str) -> None:
        # Identity key is read without a database round trip
        event_id = inspect(event).identity[0]
        # The session may hold a failed transaction from the handler
        await self.db.rollback()
        event = await self.db.get(WebhookEvent, event_id)
        if event is None:
            return
        event.status = "failed"
        event.error = error[:2000]
        event.processed_at = datetime.utcnow()
        await self.db.commit()

    async def list_failures(self, user_id: Optional[int] = None, limit: int = 100) -> List[WebhookEvent]:
        query = select(WebhookEvent).where(WebhookEvent.status == "failed")
        if user_id is not None:
            query = query.where(WebhookEvent.user_id == user_id)
        result = await self.db.execute(query.order_by(WebhookEvent.created_at.desc()).limit(limit))
        return list(result.scalars().all())
