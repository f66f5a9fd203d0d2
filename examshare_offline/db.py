import threading
import weakref

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS store_meta (
        name TEXT PRIMARY KEY,
        version INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS partition_keys (
        partition TEXT PRIMARY KEY,
        last_id INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS store_records (
        partition TEXT NOT NULL,
        id INTEGER NOT NULL,
        seq INTEGER NOT NULL,
        payload TEXT NOT NULL,
        timestamp DATETIME NOT NULL,
        pending_sync BOOLEAN NOT NULL DEFAULT 0,
        PRIMARY KEY (partition, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS caches (
        cache_name TEXT PRIMARY KEY,
        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cache_entries (
        cache_name TEXT NOT NULL,
        url TEXT NOT NULL,
        status INTEGER NOT NULL,
        headers TEXT NOT NULL,
        body BLOB NOT NULL,
        stored_at DATETIME DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (cache_name, url)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_registrations (
        tag TEXT PRIMARY KEY,
        registered_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
    """,
]

_engine_locks: "weakref.WeakKeyDictionary[Engine, threading.RLock]" = weakref.WeakKeyDictionary()
_registry_lock = threading.Lock()

def make_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every checkout sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, future=True, **kwargs)
    return create_engine(database_url, future=True, pool_pre_ping=True)

def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

def engine_lock(engine: Engine) -> threading.RLock:
    # in-memory sqlite shares one connection, so every component on an engine
    # must serialize its transactions on the same lock
    with _registry_lock:
        lock = _engine_locks.get(engine)
        if lock is None:
            lock = _engine_locks[engine] = threading.RLock()
        return lock

def init_db(engine: Engine) -> None:
    with engine.begin() as conn:
        for ddl in SCHEMA:
            conn.execute(text(ddl))
