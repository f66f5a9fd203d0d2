"""
Pytest configuration and fixtures
"""
import json
from typing import Any, Dict, List, Tuple, Union

import httpx
import pytest
import pytest_asyncio

from examshare_offline.delivery import SubmissionSender
from examshare_offline.notifications import MemoryNotifier
from examshare_offline.store import LocalStore
from examshare_offline.sync import SyncManager

UPSTREAM = "http://upstream.test"
ORIGIN = "http://app.test"

Reply = Union[int, Tuple[int, Any], httpx.Response]


class FakeUpstream:
    """Programmable stand-in for the ExamShare server.

    Replies are queued per (method, path); the last reply repeats. Setting
    ``offline`` makes every request fail with a connection error.
    """

    def __init__(self) -> None:
        self.offline = False
        self.calls: List[httpx.Request] = []
        self._replies: Dict[Tuple[str, str], List[Reply]] = {}

    def reply(self, method: str, path: str, *replies: Reply) -> None:
        self._replies[(method, path)] = list(replies)

    def calls_to(self, method: str, path: str) -> List[httpx.Request]:
        return [c for c in self.calls if c.method == method and c.url.path == path]

    def bodies(self, method: str, path: str) -> List[Dict[str, Any]]:
        return [json.loads(c.content) for c in self.calls_to(method, path)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.offline:
            raise httpx.ConnectError("network is unreachable", request=request)
        queue = self._replies.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": "Not found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, httpx.Response):
            return item
        if isinstance(item, tuple):
            status, body = item
            if isinstance(body, (bytes, str)):
                return httpx.Response(status, content=body)
            return httpx.Response(status, json=body)
        return httpx.Response(item, json={"ok": 200 <= item < 300})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def store():
    s = LocalStore.from_url("sqlite://", open_retries=1)
    await s.open()
    yield s
    s.close()


@pytest.fixture
def sender(upstream):
    return SubmissionSender(UPSTREAM + "/api/submissions", timeout=5, transport=upstream.transport)


@pytest.fixture
def notifier():
    return MemoryNotifier()


@pytest.fixture
def sync_manager():
    return SyncManager()
