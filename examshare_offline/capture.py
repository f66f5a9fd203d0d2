from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from sqlalchemy.exc import SQLAlchemyError

from .delivery import SubmissionSender, response_detail
from .errors import DeliveryFailure
from .files import DEFAULT_ACCEPTED_TYPES, DEFAULT_MAX_SIZE_MB, file_to_data_url
from .schemas import CaptureResult, SubmissionRequest
from .store import PENDING_SUBMISSIONS, LocalStore
from .sync import SUBMIT_ANSWER_TAG, SyncManager

logger = logging.getLogger(__name__)


class OfflineCapture:
    """Submits an answer right away, or queues it when the network is down.

    Only unreachable/timeout errors queue the submission; an HTTP error
    response is returned to the caller untouched. Store failures propagate.
    """

    def __init__(self, store: LocalStore, sender: SubmissionSender, sync: SyncManager) -> None:
        self._store = store
        self._sender = sender
        self._sync = sync

    async def capture(self, submission: SubmissionRequest) -> CaptureResult:
        try:
            resp = await self._sender.send(submission)
        except DeliveryFailure as e:
            if not e.network:
                return CaptureResult(delivered=False, queued=False, status_code=e.status_code, detail=e.detail)
            return await self._queue(submission)
        return CaptureResult(delivered=True, queued=False, status_code=resp.status_code, detail=response_detail(resp))

    async def capture_file(
        self,
        paper_id: int,
        path: Union[str, Path],
        accepted_types: str = DEFAULT_ACCEPTED_TYPES,
        max_size_mb: float = DEFAULT_MAX_SIZE_MB,
    ) -> CaptureResult:
        content = file_to_data_url(path, accepted_types, max_size_mb)
        submission = SubmissionRequest(paperId=paper_id, fileName=Path(path).name, fileContent=content)
        return await self.capture(submission)

    async def _queue(self, submission: SubmissionRequest) -> CaptureResult:
        record = await self._store.put(PENDING_SUBMISSIONS, submission.queue_payload())
        logger.info("Queued submission %d for paper %s until back online", record.id, submission.paper_id)
        try:
            await self._sync.register(SUBMIT_ANSWER_TAG)
        except SQLAlchemyError as e:
            logger.error("Background sync registration failed: %s", e)
        return CaptureResult(delivered=False, queued=True, record_id=record.id)
