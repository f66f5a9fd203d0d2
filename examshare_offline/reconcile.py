from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .delivery import SubmissionSender
from .errors import DeliveryFailure, OfflineError
from .notifications import Notifier, sync_notification
from .schemas import SubmissionRequest, SyncReport
from .store import PENDING_SUBMISSIONS, LocalStore
from .sync import SUBMIT_ANSWER_TAG, SyncManager

logger = logging.getLogger(__name__)


class BackgroundReconciler:
    """Drains the pending-submission queue when a sync event fires.

    Records are delivered one at a time in insertion order. A record leaves the
    queue only after a 2xx answer; anything else keeps it for the next pass.
    """

    def __init__(
        self,
        store: LocalStore,
        sender: SubmissionSender,
        notifier: Notifier,
        sync: Optional[SyncManager] = None,
    ) -> None:
        self._store = store
        self._sender = sender
        self._notifier = notifier
        self._sync = sync

    async def handle_sync(self, tag: str) -> Optional[SyncReport]:
        if tag != SUBMIT_ANSWER_TAG:
            return None
        return await self.sync_pending()

    async def sync_pending(self) -> SyncReport:
        report = SyncReport(tag=SUBMIT_ANSWER_TAG)
        try:
            await self._store.open()
            records = await self._store.get_all(PENDING_SUBMISSIONS)
        except OfflineError as e:
            logger.error("Cannot read pending submissions: %s", e)
            return report

        logger.info("Syncing %d pending submission(s)", len(records))
        for record in records:
            report.attempted += 1
            try:
                submission = SubmissionRequest.from_queue_payload(record.payload)
            except (KeyError, ValidationError) as e:
                logger.error("Pending submission %d is malformed, leaving it queued: %s", record.id, e)
                report.failed.append(record.id)
                continue
            try:
                await self._sender.send(submission)
            except DeliveryFailure as e:
                logger.warning("Pending submission %d still undelivered: %s", record.id, e)
                report.failed.append(record.id)
                continue
            try:
                await self._store.delete(PENDING_SUBMISSIONS, record.id)
            except OfflineError as e:
                # delivered but still queued: the next pass will send it again
                logger.error("Delivered submission %d could not be removed from the queue: %s", record.id, e)
            report.delivered.append(record.id)
            self._notifier.show(sync_notification(record.id))

        if report.failed and self._sync is not None:
            try:
                await self._sync.register(SUBMIT_ANSWER_TAG, hold_until_reconnect=True)
            except SQLAlchemyError as e:
                logger.error("Could not re-register sync for %d failed submission(s): %s", len(report.failed), e)
        logger.info(
            "Sync finished: %d delivered, %d still pending", len(report.delivered), len(report.failed)
        )
        return report
