"""Durable key-value store for offline data.

Records live in named partitions inside a single SQL database. Every public
operation is a coroutine that runs one transaction in a worker thread, so
callers compose them with ``await`` instead of callbacks.
"""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .db import engine_lock, init_db, make_engine, make_session_factory
from .errors import OfflineError, StoreUnavailable, TransactionError
from .schemas import StoredRecord

logger = logging.getLogger(__name__)

STORE_NAME = "examshare-offline"
STORE_VERSION = 1

PENDING_SUBMISSIONS = "pendingSubmissions"
CACHED_QUESTION_PAPERS = "cachedQuestionPapers"
CACHED_SUBMISSIONS = "cachedSubmissions"
PARTITIONS = (PENDING_SUBMISSIONS, CACHED_QUESTION_PAPERS, CACHED_SUBMISSIONS)


class LocalStore:
    def __init__(self, engine: Engine, open_retries: int = 3, open_backoff_seconds: float = 0.5) -> None:
        self._engine = engine
        self._sessions = make_session_factory(engine)
        self._lock = engine_lock(engine)
        self._opened = False
        self._open_retries = max(1, open_retries)
        self._open_backoff_seconds = open_backoff_seconds

    @classmethod
    def from_url(cls, database_url: str, **kwargs: Any) -> "LocalStore":
        return cls(make_engine(database_url), **kwargs)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def is_open(self) -> bool:
        return self._opened

    async def open(self) -> "LocalStore":
        """Create the store and its partitions if missing. Safe to call repeatedly."""
        if self._opened:
            return self
        try:
            await asyncio.to_thread(self._locked_open)
        except StoreUnavailable:
            raise
        except SQLAlchemyError as e:
            logger.error("Local store unavailable: %s", e)
            raise StoreUnavailable(f"cannot open local store: {e}") from e
        self._opened = True
        logger.info("Local store %s v%d ready (%s)", STORE_NAME, STORE_VERSION, self._engine.url)
        return self

    async def put(self, partition: str, record: Dict[str, Any]) -> StoredRecord:
        return await self._run(self._put, partition, record)

    async def get_all(self, partition: str) -> List[StoredRecord]:
        return await self._run(self._get_all, partition)

    async def get(self, partition: str, record_id: int) -> Optional[StoredRecord]:
        return await self._run(self._get, partition, record_id)

    async def count(self, partition: str) -> int:
        return await self._run(self._count, partition)

    async def delete(self, partition: str, record_id: int) -> None:
        await self._run(self._delete, partition, record_id)

    def close(self) -> None:
        self._opened = False
        self._engine.dispose()

    # --- internals, executed in a worker thread ---

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        if not self._opened:
            raise StoreUnavailable("local store is not open")
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            try:
                return fn(*args)
            except OfflineError:
                raise
            except SQLAlchemyError as e:
                logger.warning("Store operation %s failed: %s", fn.__name__, e)
                raise TransactionError(str(e)) from e

    def _locked_open(self) -> None:
        with self._lock:
            self._open_with_retry()

    def _open_with_retry(self) -> None:
        retrying = Retrying(
            reraise=True,
            stop=stop_after_attempt(self._open_retries),
            wait=wait_exponential_jitter(initial=self._open_backoff_seconds, max=5),
            retry=retry_if_exception_type(OperationalError),
        )
        retrying(self._open_sync)

    def _open_sync(self) -> None:
        init_db(self._engine)
        with self._sessions.begin() as db:
            row = db.execute(
                text("SELECT version FROM store_meta WHERE name=:name"), {"name": STORE_NAME}
            ).first()
            if row is None:
                db.execute(
                    text("INSERT INTO store_meta (name, version) VALUES (:name, :version)"),
                    {"name": STORE_NAME, "version": STORE_VERSION},
                )
            elif row[0] != STORE_VERSION:
                raise StoreUnavailable(f"store version {row[0]} is not supported (expected {STORE_VERSION})")
            for partition in PARTITIONS:
                exists = db.execute(
                    text("SELECT 1 FROM partition_keys WHERE partition=:p"), {"p": partition}
                ).first()
                if exists is None:
                    db.execute(
                        text("INSERT INTO partition_keys (partition, last_id) VALUES (:p, 0)"), {"p": partition}
                    )

    def _put(self, partition: str, record: Dict[str, Any]) -> StoredRecord:
        if partition not in PARTITIONS:
            raise TransactionError(f"unknown partition '{partition}'")
        data = dict(record)
        raw_id = data.pop("id", None)
        now = datetime.now(timezone.utc)
        pending = partition == PENDING_SUBMISSIONS

        with self._sessions.begin() as db:
            last_id = db.execute(
                text("SELECT last_id FROM partition_keys WHERE partition=:p"), {"p": partition}
            ).scalar_one()
            if raw_id is None:
                record_id = last_id + 1
            else:
                try:
                    record_id = int(raw_id)
                except (TypeError, ValueError) as e:
                    raise TransactionError(f"record id {raw_id!r} is not an integer") from e
            # explicit ids advance the generator too, so generated ids never collide
            if record_id > last_id:
                db.execute(
                    text("UPDATE partition_keys SET last_id=:id WHERE partition=:p"),
                    {"id": record_id, "p": partition},
                )

            params = {
                "p": partition,
                "id": record_id,
                "payload": json.dumps(data, ensure_ascii=False),
                "ts": now.isoformat(),
                "pending": pending,
            }
            existing = db.execute(
                text("SELECT seq FROM store_records WHERE partition=:p AND id=:id"), {"p": partition, "id": record_id}
            ).first()
            if existing is not None:
                db.execute(
                    text("""UPDATE store_records SET payload=:payload, timestamp=:ts, pending_sync=:pending
                             WHERE partition=:p AND id=:id"""),
                    params,
                )
            else:
                seq = db.execute(
                    text("SELECT COALESCE(MAX(seq), 0) + 1 FROM store_records WHERE partition=:p"), {"p": partition}
                ).scalar_one()
                db.execute(
                    text("""INSERT INTO store_records (partition, id, seq, payload, timestamp, pending_sync)
                             VALUES (:p, :id, :seq, :payload, :ts, :pending)"""),
                    {**params, "seq": seq},
                )

        logger.debug("Stored record %s/%s", partition, record_id)
        return StoredRecord(id=record_id, payload=data, timestamp=now, pending_sync=pending)

    def _get_all(self, partition: str) -> List[StoredRecord]:
        if partition not in PARTITIONS:
            return []
        with self._sessions() as db:
            rows = db.execute(
                text("""SELECT id, payload, timestamp, pending_sync FROM store_records
                         WHERE partition=:p ORDER BY seq ASC"""),
                {"p": partition},
            ).all()
        return [_row_to_record(r) for r in rows]

    def _get(self, partition: str, record_id: int) -> Optional[StoredRecord]:
        with self._sessions() as db:
            row = db.execute(
                text("""SELECT id, payload, timestamp, pending_sync FROM store_records
                         WHERE partition=:p AND id=:id"""),
                {"p": partition, "id": record_id},
            ).first()
        return _row_to_record(row) if row else None

    def _count(self, partition: str) -> int:
        with self._sessions() as db:
            return db.execute(
                text("SELECT COUNT(*) FROM store_records WHERE partition=:p"), {"p": partition}
            ).scalar_one()

    def _delete(self, partition: str, record_id: int) -> None:
        with self._sessions.begin() as db:
            db.execute(
                text("DELETE FROM store_records WHERE partition=:p AND id=:id"), {"p": partition, "id": record_id}
            )


def _row_to_record(row: Any) -> StoredRecord:
    ts = row[2]
    if isinstance(ts, str):
        ts = datetime.fromisoformat(ts)
    return StoredRecord(id=row[0], payload=json.loads(row[1]), timestamp=ts, pending_sync=bool(row[3]))
