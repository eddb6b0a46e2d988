"""Exactly-once admission of billing provider webhook events."""

import logging
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import WebhookEvent, utcnow
from ..database.repository import WebhookEventRepository

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30

# A processing claim older than this is assumed abandoned by a dead worker
STALE_PROCESSING_AFTER = timedelta(minutes=5)


class AdmissionResult(BaseModel):
    event_id: str
    admitted: bool
    retry: bool = False


class WebhookIdempotencyGuard:
    """Gatekeeper backed by the webhook event ledger.

    ``admit`` is the single synchronization point: the conditional insert
    succeeds for exactly one delivery of an event id. A delivery of an event
    whose previous attempt failed, or whose processing claim has gone stale,
    is re-admitted so the provider's retry can finish the work. Every state
    change is committed immediately.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.events = WebhookEventRepository(session)

    async def admit(self, event_id: str, event_type: str = "unknown") -> AdmissionResult:
        if await self.events.insert_if_absent(event_id, event_type):
            await self.session.commit()
            logger.info(f"Admitted webhook event {event_id} ({event_type})")
            return AdmissionResult(event_id=event_id, admitted=True)

        if await self.events.readmit_failed(event_id):
            await self.session.commit()
            logger.info(f"Re-admitted previously failed webhook event {event_id}")
            return AdmissionResult(event_id=event_id, admitted=True, retry=True)

        if await self.events.reclaim_stale(event_id, utcnow() - STALE_PROCESSING_AFTER):
            await self.session.commit()
            logger.warning(f"Reclaimed webhook event {event_id} stuck in processing")
            return AdmissionResult(event_id=event_id, admitted=True, retry=True)

        await self.session.commit()
        logger.info(f"Webhook event {event_id} already handled; skipping")
        return AdmissionResult(event_id=event_id, admitted=False)

    async def complete(self, event_id: str) -> None:
        await self.events.mark_completed(event_id)
        await self.session.commit()
        logger.info(f"Webhook event {event_id} completed")

    async def fail(self, event_id: str, error_message: str) -> None:
        await self.events.mark_failed(event_id, error_message)
        await self.session.commit()
        logger.warning(f"Webhook event {event_id} failed: {error_message}")

    async def get(self, event_id: str) -> Optional[WebhookEvent]:
        return await self.events.get(event_id)

    async def cleanup(self, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete ledger entries older than the retention window."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        deleted = await self.events.delete_older_than(cutoff)
        await self.session.commit()
        logger.info(f"Deleted {deleted} webhook events processed before {cutoff.isoformat()}")
        return deleted
