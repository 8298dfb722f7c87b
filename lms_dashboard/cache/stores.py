"""
Key-value stores backing the cache tiers.

Both tiers share one interface: a flat namespace of string keys to string
values. The session tier lives in process memory; the persistent tier is a
single SQL table.
"""
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from sqlalchemy import Column, DateTime, String, Text, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger("cache.stores")

Base = declarative_base()


class KeyValueStore(Protocol):
    """Interface consumed by the cache manager."""

    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...

    def keys(self) -> List[str]:
        ...


class MemoryStore:
    """Process-local store; used for the session tier and in tests."""

    def __init__(self):
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def remove(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class StoredValue(Base):
    """One persisted cache value."""
    __tablename__ = "kv_entries"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<StoredValue(key='{self.key}')>"


class SQLStore:
    """
    Profile-persistent store on SQLAlchemy.

    Writes are last-write-wins; keys are unique per (feature, user) so
    concurrent writers never race on the same row within a page lifecycle.
    """

    def __init__(self, database_url: str = "sqlite:///./dashboard_cache.db"):
        engine_args = {}
        if database_url.startswith("sqlite"):
            engine_args["connect_args"] = {"check_same_thread": False}
            # In-memory databases are per connection; share one across threads
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_args["poolclass"] = StaticPool
        self.engine = create_engine(database_url, echo=False, **engine_args)
        Base.metadata.create_all(bind=self.engine)
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock, self._sessions() as db:
            row = db.get(StoredValue, key)
            return row.value if row is not None else None

    def set(self, key: str, value: str) -> None:
        with self._lock, self._sessions() as db:
            row = db.get(StoredValue, key)
            if row is None:
                db.add(StoredValue(key=key, value=value))
            else:
                row.value = value
            db.commit()

    def remove(self, key: str) -> None:
        with self._lock, self._sessions() as db:
            row = db.get(StoredValue, key)
            if row is not None:
                db.delete(row)
                db.commit()

    def keys(self) -> List[str]:
        with self._lock, self._sessions() as db:
            return [key for (key,) in db.query(StoredValue.key).all()]

    def dispose(self) -> None:
        self.engine.dispose()
