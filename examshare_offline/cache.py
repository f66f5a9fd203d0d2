"""Named, versioned HTTP response caches kept in the local database."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from .db import engine_lock, init_db

logger = logging.getLogger(__name__)


@dataclass
class ProxyResponse:
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def copy(self) -> "ProxyResponse":
        return ProxyResponse(self.status, dict(self.headers), bytes(self.body))

    def json(self) -> Any:
        return json.loads(self.body)


class CacheStorage:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._lock = engine_lock(engine)
        self._ready = False

    async def open(self, name: str) -> "ResponseCache":
        await self._run(self._open_sync, name)
        return ResponseCache(self, name)

    async def keys(self) -> List[str]:
        return await self._run(self._keys_sync)

    async def has(self, name: str) -> bool:
        return name in await self.keys()

    async def delete(self, name: str) -> bool:
        return await self._run(self._delete_sync, name)

    async def match(self, url: str) -> Optional[ProxyResponse]:
        """Look the url up in every cache, oldest cache first."""
        return await self._run(self._match_sync, None, url)

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable[..., Any], *args: Any) -> Any:
        with self._lock:
            if not self._ready:
                init_db(self._engine)
                self._ready = True
            return fn(*args)

    def _open_sync(self, name: str) -> None:
        with self._engine.begin() as conn:
            exists = conn.execute(text("SELECT 1 FROM caches WHERE cache_name=:n"), {"n": name}).first()
            if exists is None:
                conn.execute(text("INSERT INTO caches (cache_name) VALUES (:n)"), {"n": name})

    def _keys_sync(self) -> List[str]:
        with self._engine.connect() as conn:
            rows = conn.execute(text("SELECT cache_name FROM caches ORDER BY created_at, cache_name")).all()
        return [r[0] for r in rows]

    def _delete_sync(self, name: str) -> bool:
        with self._engine.begin() as conn:
            conn.execute(text("DELETE FROM cache_entries WHERE cache_name=:n"), {"n": name})
            result = conn.execute(text("DELETE FROM caches WHERE cache_name=:n"), {"n": name})
        return result.rowcount > 0

    def _match_sync(self, name: Optional[str], url: str) -> Optional[ProxyResponse]:
        sql = """SELECT e.status, e.headers, e.body FROM cache_entries e
                 JOIN caches c ON c.cache_name = e.cache_name
                 WHERE e.url=:url"""
        params: Dict[str, Any] = {"url": url}
        if name is not None:
            sql += " AND e.cache_name=:n"
            params["n"] = name
        sql += " ORDER BY c.created_at, c.cache_name LIMIT 1"
        with self._engine.connect() as conn:
            row = conn.execute(text(sql), params).first()
        if row is None:
            return None
        return ProxyResponse(status=row[0], headers=json.loads(row[1]), body=bytes(row[2]))

    def _put_sync(self, name: str, url: str, response: ProxyResponse) -> None:
        params = {
            "n": name,
            "url": url,
            "status": response.status,
            "headers": json.dumps(response.headers),
            "body": response.body,
        }
        with self._engine.begin() as conn:
            conn.execute(text("DELETE FROM cache_entries WHERE cache_name=:n AND url=:url"), params)
            conn.execute(
                text("""INSERT INTO cache_entries (cache_name, url, status, headers, body)
                         VALUES (:n, :url, :status, :headers, :body)"""),
                params,
            )

    def _delete_entry_sync(self, name: str, url: str) -> bool:
        with self._engine.begin() as conn:
            result = conn.execute(
                text("DELETE FROM cache_entries WHERE cache_name=:n AND url=:url"), {"n": name, "url": url}
            )
        return result.rowcount > 0

    def _urls_sync(self, name: str) -> List[str]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text("SELECT url FROM cache_entries WHERE cache_name=:n ORDER BY stored_at, url"), {"n": name}
            ).all()
        return [r[0] for r in rows]


class ResponseCache:
    def __init__(self, storage: CacheStorage, name: str) -> None:
        self._storage = storage
        self.name = name

    async def match(self, url: str) -> Optional[ProxyResponse]:
        return await self._storage._run(self._storage._match_sync, self.name, url)

    async def put(self, url: str, response: ProxyResponse) -> None:
        await self._storage._run(self._storage._put_sync, self.name, url, response)
        logger.debug("Cached %s in %s", url, self.name)

    async def delete(self, url: str) -> bool:
        return await self._storage._run(self._storage._delete_entry_sync, self.name, url)

    async def keys(self) -> List[str]:
        return await self._storage._run(self._storage._urls_sync, self.name)
