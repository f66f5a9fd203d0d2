"""Deferred sync: tag registrations that fire once the upstream is reachable."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy import text
from sqlalchemy.engine import Engine

from .db import engine_lock, init_db

logger = logging.getLogger(__name__)

SUBMIT_ANSWER_TAG = "submit-answer"

SyncHandler = Callable[[str], Awaitable[Any]]


class SyncManager:
    """Tag registry with one handler per tag.

    A tag registered by a failed sync pass is held back until the next
    reconnect; a fresh registration clears the hold so it fires on the next
    check while online.
    """

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine
        self._db_lock = engine_lock(engine) if engine is not None else None
        self._handlers: Dict[str, SyncHandler] = {}
        self._pending: Set[str] = set()
        self._held: Set[str] = set()
        self._fresh: Set[str] = set()
        self._locks: Dict[str, asyncio.Lock] = {}

    def on(self, tag: str, handler: SyncHandler) -> None:
        self._handlers[tag] = handler

    @property
    def pending_tags(self) -> List[str]:
        return sorted(self._pending)

    @property
    def ready_tags(self) -> List[str]:
        return sorted(self._pending - self._held)

    async def load(self) -> None:
        """Restore registrations persisted by a previous run."""
        if self._engine is None:
            return
        tags = await asyncio.to_thread(self._db, self._load_sync)
        self._pending.update(tags)
        if tags:
            logger.info("Restored sync registrations: %s", ", ".join(sorted(tags)))

    async def register(self, tag: str, hold_until_reconnect: bool = False) -> None:
        self._pending.add(tag)
        if not hold_until_reconnect:
            self._held.discard(tag)
            self._fresh.add(tag)
        elif tag not in self._fresh:
            self._held.add(tag)
        if self._engine is not None:
            await asyncio.to_thread(self._db, self._persist_sync, tag)
        logger.info("Background sync registered: %s", tag)

    async def fire(self, tag: str) -> Any:
        handler = self._handlers.get(tag)
        if handler is None:
            logger.debug("No sync handler for tag %s", tag)
            return None
        lock = self._locks.setdefault(tag, asyncio.Lock())
        async with lock:
            await self._consume(tag)
            try:
                return await handler(tag)
            except Exception:
                # a failed sync event stays registered for the next reconnect
                await self.register(tag, hold_until_reconnect=True)
                raise

    async def fire_pending(self, include_held: bool = True) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        for tag in self.pending_tags if include_held else self.ready_tags:
            try:
                results[tag] = await self.fire(tag)
            except Exception as e:
                logger.error("Sync for tag %s failed: %s", tag, e)
        return results

    async def _consume(self, tag: str) -> None:
        self._pending.discard(tag)
        self._held.discard(tag)
        self._fresh.discard(tag)
        if self._engine is not None:
            await asyncio.to_thread(self._db, self._remove_sync, tag)

    def _db(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._db_lock:
            return fn(*args)

    def _load_sync(self) -> Set[str]:
        init_db(self._engine)
        with self._engine.connect() as conn:
            return {r[0] for r in conn.execute(text("SELECT tag FROM sync_registrations"))}

    def _persist_sync(self, tag: str) -> None:
        with self._engine.begin() as conn:
            exists = conn.execute(text("SELECT 1 FROM sync_registrations WHERE tag=:tag"), {"tag": tag}).first()
            if exists is None:
                conn.execute(text("INSERT INTO sync_registrations (tag) VALUES (:tag)"), {"tag": tag})

    def _remove_sync(self, tag: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(text("DELETE FROM sync_registrations WHERE tag=:tag"), {"tag": tag})


class ConnectivityMonitor:
    """Polls the upstream and fires pending syncs when it becomes reachable."""

    def __init__(
        self,
        health_url: str,
        sync_manager: SyncManager,
        interval_seconds: float = 15.0,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.health_url = health_url
        self._sync = sync_manager
        self._interval = interval_seconds
        self._timeout = timeout_seconds
        self._transport = transport
        self._online: Optional[bool] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_online(self) -> bool:
        return bool(self._online)

    async def probe(self) -> bool:
        # any HTTP answer, even 401, means the server is reachable
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                await client.get(self.health_url)
            return True
        except httpx.TransportError:
            return False

    async def check(self) -> bool:
        online = await self.probe()
        previous, self._online = self._online, online
        if online and previous is not True:
            logger.info("Upstream reachable at %s", self.health_url)
            await self._sync.fire_pending()
        elif online and self._sync.ready_tags:
            await self._sync.fire_pending(include_held=False)
        elif not online and previous is not False:
            logger.warning("Upstream unreachable at %s, working offline", self.health_url)
        return online

    async def run(self) -> None:
        while True:
            await self.check()
            await asyncio.sleep(self._interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
