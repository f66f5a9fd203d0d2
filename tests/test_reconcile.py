"""
Unit tests for background reconciliation of queued submissions
"""
import pytest

from examshare_offline.capture import OfflineCapture
from examshare_offline.notifications import SYNC_BODY, SYNC_TITLE
from examshare_offline.reconcile import BackgroundReconciler
from examshare_offline.schemas import SubmissionRequest
from examshare_offline.store import PENDING_SUBMISSIONS
from examshare_offline.sync import SUBMIT_ANSWER_TAG

SUBMIT_PATH = "/api/submissions"


def submission(name, paper_id=7):
    return SubmissionRequest(paperId=paper_id, fileName=name, fileContent="data:application/pdf;base64,AAA=")


@pytest.fixture
def capture(store, sender, sync_manager):
    return OfflineCapture(store, sender, sync_manager)


@pytest.fixture
def reconciler(store, sender, notifier, sync_manager):
    return BackgroundReconciler(store, sender, notifier, sync_manager)


async def queue_offline(capture, upstream, *names):
    upstream.offline = True
    for name in names:
        await capture.capture(submission(name))
    upstream.offline = False
    upstream.calls.clear()


class TestReconcile:
    @pytest.mark.asyncio
    async def test_single_offline_submission_syncs(self, capture, reconciler, upstream, store, notifier):
        await queue_offline(capture, upstream, "ans.pdf")
        assert await store.count(PENDING_SUBMISSIONS) == 1

        upstream.reply("POST", SUBMIT_PATH, 200)
        report = await reconciler.handle_sync(SUBMIT_ANSWER_TAG)

        assert await store.count(PENDING_SUBMISSIONS) == 0
        assert report.delivered == [1]
        assert report.failed == []
        assert len(notifier.items) == 1
        assert notifier.items[0].title == SYNC_TITLE
        assert notifier.items[0].body == SYNC_BODY

    @pytest.mark.asyncio
    async def test_failed_delivery_keeps_only_that_record(self, capture, reconciler, upstream, store, notifier):
        await queue_offline(capture, upstream, "first.pdf", "second.pdf")

        upstream.reply("POST", SUBMIT_PATH, 500, 200)
        report = await reconciler.sync_pending()

        records = await store.get_all(PENDING_SUBMISSIONS)
        assert [r.payload["fileName"] for r in records] == ["first.pdf"]
        assert report.failed == [1]
        assert report.delivered == [2]
        assert len(notifier.items) == 1

    @pytest.mark.asyncio
    async def test_delivery_follows_insertion_order(self, capture, reconciler, upstream):
        await queue_offline(capture, upstream, "A", "B", "C")

        upstream.reply("POST", SUBMIT_PATH, 201)
        await reconciler.sync_pending()

        assert [b["fileName"] for b in upstream.bodies("POST", SUBMIT_PATH)] == ["A", "B", "C"]

    @pytest.mark.asyncio
    async def test_one_attempt_per_pending_record(self, capture, reconciler, upstream):
        await queue_offline(capture, upstream, "A", "B")

        upstream.reply("POST", SUBMIT_PATH, 503)
        report = await reconciler.sync_pending()

        assert report.attempted == 2
        assert len(upstream.calls_to("POST", SUBMIT_PATH)) == 2

    @pytest.mark.asyncio
    async def test_empty_queue_makes_no_calls(self, reconciler, upstream, notifier):
        report = await reconciler.sync_pending()
        report_again = await reconciler.sync_pending()

        assert report.attempted == report_again.attempted == 0
        assert upstream.calls == []
        assert notifier.items == []

    @pytest.mark.asyncio
    async def test_retrigger_after_success_is_idle(self, capture, reconciler, upstream):
        await queue_offline(capture, upstream, "A")
        upstream.reply("POST", SUBMIT_PATH, 200)
        await reconciler.sync_pending()
        upstream.calls.clear()

        await reconciler.sync_pending()
        assert upstream.calls == []

    @pytest.mark.asyncio
    async def test_network_error_keeps_queue_and_reregisters(
        self, capture, reconciler, upstream, store, sync_manager
    ):
        sync_manager.on(SUBMIT_ANSWER_TAG, reconciler.handle_sync)
        await queue_offline(capture, upstream, "A", "B")

        upstream.offline = True
        report = await sync_manager.fire(SUBMIT_ANSWER_TAG)

        assert report.failed == [1, 2]
        assert await store.count(PENDING_SUBMISSIONS) == 2
        assert sync_manager.pending_tags == [SUBMIT_ANSWER_TAG]
        assert sync_manager.ready_tags == []

    @pytest.mark.asyncio
    async def test_other_tags_are_ignored(self, capture, reconciler, upstream):
        await queue_offline(capture, upstream, "A")

        assert await reconciler.handle_sync("refresh-papers") is None
        assert upstream.calls == []

    @pytest.mark.asyncio
    async def test_sync_event_drives_reconciliation(self, capture, reconciler, upstream, store, sync_manager):
        sync_manager.on(SUBMIT_ANSWER_TAG, reconciler.handle_sync)
        await queue_offline(capture, upstream, "A")
        upstream.reply("POST", SUBMIT_PATH, 201)

        await sync_manager.fire_pending()

        assert await store.count(PENDING_SUBMISSIONS) == 0
        assert sync_manager.pending_tags == []
