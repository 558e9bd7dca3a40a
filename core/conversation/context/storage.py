"""
Thread storage and persistence layer.

This module defines the uniform storage interface for conversation thread
snapshots together with the built-in adapters (in-memory, PostgreSQL,
MongoDB and JSON files) and the registry that resolves them by name.
Every adapter enforces its own TTL lazily: an expired snapshot is removed
when it is read and reported as absent.
"""

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from core.conversation.errors import StorageError, UnsupportedProviderError
from models.schemas import ThreadSnapshot

logger = logging.getLogger(__name__)


class ThreadStorage(ABC):
    """Abstract base class for thread storage adapters"""

    def __init__(self, ttl: Optional[float] = None, **options):
        self.ttl = ttl
        self.options = options
        self._executor: Optional[ThreadPoolExecutor] = None

    def is_expired(self, last_used: Optional[float], now: Optional[float] = None) -> bool:
        """Check a snapshot's last_used timestamp against the TTL"""
        if not self.ttl or last_used is None:
            return False
        now = time.time() if now is None else now
        return now - float(last_used) > self.ttl

    async def _run(self, func: Callable, *args, **kwargs):
        """Run a blocking driver call on the adapter's executor"""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.options.get("max_workers", 4),
                thread_name_prefix=self.__class__.__name__,
            )
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(func, *args, **kwargs))

    @abstractmethod
    async def get(self, chat_id: str) -> Optional[ThreadSnapshot]:
        """
        Get a thread snapshot.

        Args:
            chat_id: Chat identifier

        Returns:
            Snapshot, or None when missing or expired
        """

    @abstractmethod
    async def save(self, snapshot: ThreadSnapshot) -> bool:
        """Insert or replace the snapshot keyed by its chat_id"""

    @abstractmethod
    async def delete(self, chat_id: str) -> bool:
        """Delete a snapshot, returning whether one existed"""

    @abstractmethod
    async def list_all(self, query: Optional[Dict[str, Any]] = None) -> List[ThreadSnapshot]:
        """List stored snapshots matching the query"""

    async def close(self):
        """Release connections held by the adapter"""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None


def _matches(snapshot: ThreadSnapshot, query: Optional[Dict[str, Any]]) -> bool:
    if not query:
        return True
    data = snapshot.model_dump(mode="json")
    return all(data.get(key) == value for key, value in query.items())


class MemoryThreadStorage(ThreadStorage):
    """Keeps snapshots in process memory"""

    def __init__(self, ttl: Optional[float] = None, **options):
        super().__init__(ttl=ttl, **options)
        self._threads: Dict[str, ThreadSnapshot] = {}

    async def get(self, chat_id: str) -> Optional[ThreadSnapshot]:
        snapshot = self._threads.get(chat_id)
        if snapshot is None:
            return None

        if self.is_expired(snapshot.last_used):
            logger.info(f"Thread {chat_id} expired, removing from memory storage")
            del self._threads[chat_id]
            return None

        return snapshot.model_copy(deep=True)

    async def save(self, snapshot: ThreadSnapshot) -> bool:
        self._threads[snapshot.chat_id] = snapshot.model_copy(deep=True)
        return True

    async def delete(self, chat_id: str) -> bool:
        return self._threads.pop(chat_id, None) is not None

    async def list_all(self, query: Optional[Dict[str, Any]] = None) -> List[ThreadSnapshot]:
        now = time.time()
        return [
            snapshot.model_copy(deep=True)
            for snapshot in self._threads.values()
            if not self.is_expired(snapshot.last_used, now) and _matches(snapshot, query)
        ]


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLThreadStorage(ThreadStorage):
    """
    Stores snapshots in PostgreSQL.

    The table is created on first use. Blocking psycopg2 calls run on the
    adapter's executor so the event loop is never blocked.
    """

    QUERYABLE_COLUMNS = {"chat_id", "last_used"}

    def __init__(self, ttl: Optional[float] = None, database=None, table: str = "assistant_threads",
                 **options):
        super().__init__(ttl=ttl, **options)
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table}")
        self.table = table
        if database is None:
            from core.database import Database
            database = Database(
                dsn=options.get("dsn"),
                dbname=options.get("dbname"),
                user=options.get("user"),
                password=options.get("password"),
                host=options.get("host"),
                port=options.get("port"),
            )
        self.db = database
        self._initialized = False

    def _ensure_table(self):
        if self._initialized:
            return
        self.db.execute_update(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                chat_id VARCHAR(255) PRIMARY KEY,
                context JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                history JSONB NOT NULL DEFAULT '[]'::jsonb,
                last_used DOUBLE PRECISION NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
        """)
        self.db.execute_update(
            f"CREATE INDEX IF NOT EXISTS {self.table}_last_used_idx ON {self.table} (last_used)"
        )
        self._initialized = True
        logger.info(f"Thread table '{self.table}' ready")

    @staticmethod
    def _row_to_snapshot(row: Dict[str, Any]) -> ThreadSnapshot:
        context = row.get("context") or {}
        history = row.get("history") or []
        if isinstance(context, str):
            context = json.loads(context)
        if isinstance(history, str):
            history = json.loads(history)
        return ThreadSnapshot(
            chat_id=row["chat_id"],
            context=context,
            history=history,
            last_used=row["last_used"],
        )

    def _get_sync(self, chat_id: str) -> Optional[ThreadSnapshot]:
        self._ensure_table()
        rows = self.db.execute_query(
            f"SELECT chat_id, context, history, last_used FROM {self.table} WHERE chat_id = %s",
            (chat_id,)
        )
        if not rows:
            return None

        snapshot = self._row_to_snapshot(rows[0])
        if self.is_expired(snapshot.last_used):
            logger.info(f"Thread {chat_id} expired, deleting from SQL storage")
            self.db.execute_update(f"DELETE FROM {self.table} WHERE chat_id = %s", (chat_id,))
            return None
        return snapshot

    def _save_sync(self, snapshot: ThreadSnapshot) -> bool:
        self._ensure_table()
        data = snapshot.model_dump(mode="json")
        self.db.execute_update(f"""
            INSERT INTO {self.table} (chat_id, context, history, last_used)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (chat_id)
            DO UPDATE SET
                context = EXCLUDED.context,
                history = EXCLUDED.history,
                last_used = EXCLUDED.last_used,
                updated_at = NOW()
        """, (
            snapshot.chat_id,
            json.dumps(data["context"], default=str),
            json.dumps(data["history"]),
            snapshot.last_used,
        ))
        return True

    def _delete_sync(self, chat_id: str) -> bool:
        self._ensure_table()
        deleted = self.db.execute_update(f"DELETE FROM {self.table} WHERE chat_id = %s", (chat_id,))
        return deleted > 0

    def _list_sync(self, query: Optional[Dict[str, Any]]) -> List[ThreadSnapshot]:
        self._ensure_table()
        clauses = []
        params = []
        for key, value in (query or {}).items():
            # Unknown keys are ignored rather than interpolated
            if key in self.QUERYABLE_COLUMNS:
                clauses.append(f"{key} = %s")
                params.append(value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.db.execute_query(
            f"SELECT chat_id, context, history, last_used FROM {self.table}{where} ORDER BY last_used DESC",
            tuple(params) or None
        )
        now = time.time()
        return [
            self._row_to_snapshot(row) for row in rows
            if not self.is_expired(row.get("last_used"), now)
        ]

    async def get(self, chat_id: str) -> Optional[ThreadSnapshot]:
        try:
            return await self._run(self._get_sync, chat_id)
        except Exception as e:
            logger.error(f"Failed to load thread {chat_id}: {str(e)}")
            raise StorageError(f"Failed to load thread {chat_id}") from e

    async def save(self, snapshot: ThreadSnapshot) -> bool:
        try:
            return await self._run(self._save_sync, snapshot)
        except Exception as e:
            logger.error(f"Failed to save thread {snapshot.chat_id}: {str(e)}")
            raise StorageError(f"Failed to save thread {snapshot.chat_id}") from e

    async def delete(self, chat_id: str) -> bool:
        return await self._run(self._delete_sync, chat_id)

    async def list_all(self, query: Optional[Dict[str, Any]] = None) -> List[ThreadSnapshot]:
        return await self._run(self._list_sync, query)

    async def close(self):
        self.db.close_all_connections()
        await super().close()


class MongoDBThreadStorage(ThreadStorage):
    """Stores snapshots in a MongoDB collection"""

    def __init__(self, ttl: Optional[float] = None, uri: str = "mongodb://localhost:27017",
                 db_name: str = "chat_assistant", collection_name: str = "threads",
                 client=None, **options):
        super().__init__(ttl=ttl, **options)
        self.uri = uri
        self.db_name = db_name
        self.collection_name = collection_name
        self._client = client
        self._collection = None

    def _ensure_collection(self):
        if self._collection is not None:
            return self._collection
        if self._client is None:
            from pymongo import MongoClient
            self._client = MongoClient(self.uri)
        collection = self._client[self.db_name][self.collection_name]
        collection.create_index("chat_id", unique=True)
        collection.create_index("last_used")
        self._collection = collection
        logger.info(f"MongoDB thread storage ready ({self.db_name}.{self.collection_name})")
        return collection

    def _get_sync(self, chat_id: str) -> Optional[ThreadSnapshot]:
        collection = self._ensure_collection()
        document = collection.find_one({"chat_id": chat_id}, {"_id": 0})
        if not document:
            return None
        if self.is_expired(document.get("last_used")):
            logger.info(f"Thread {chat_id} expired, deleting from MongoDB storage")
            collection.delete_one({"chat_id": chat_id})
            return None
        return ThreadSnapshot(**document)

    def _save_sync(self, snapshot: ThreadSnapshot) -> bool:
        collection = self._ensure_collection()
        collection.update_one(
            {"chat_id": snapshot.chat_id},
            {"$set": snapshot.model_dump(mode="json")},
            upsert=True
        )
        return True

    def _delete_sync(self, chat_id: str) -> bool:
        result = self._ensure_collection().delete_one({"chat_id": chat_id})
        return result.deleted_count > 0

    def _list_sync(self, query: Optional[Dict[str, Any]]) -> List[ThreadSnapshot]:
        documents = self._ensure_collection().find(query or {}, {"_id": 0})
        now = time.time()
        return [
            ThreadSnapshot(**document) for document in documents
            if not self.is_expired(document.get("last_used"), now)
        ]

    async def get(self, chat_id: str) -> Optional[ThreadSnapshot]:
        try:
            return await self._run(self._get_sync, chat_id)
        except Exception as e:
            logger.error(f"Failed to load thread {chat_id}: {str(e)}")
            raise StorageError(f"Failed to load thread {chat_id}") from e

    async def save(self, snapshot: ThreadSnapshot) -> bool:
        try:
            return await self._run(self._save_sync, snapshot)
        except Exception as e:
            logger.error(f"Failed to save thread {snapshot.chat_id}: {str(e)}")
            raise StorageError(f"Failed to save thread {snapshot.chat_id}") from e

    async def delete(self, chat_id: str) -> bool:
        return await self._run(self._delete_sync, chat_id)

    async def list_all(self, query: Optional[Dict[str, Any]] = None) -> List[ThreadSnapshot]:
        return await self._run(self._list_sync, query)

    async def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None
            self._collection = None
        await super().close()


class FileThreadStorage(ThreadStorage):
    """Stores one JSON document per chat in a directory"""

    def __init__(self, ttl: Optional[float] = None, storage_path: str = "thread_storage", **options):
        super().__init__(ttl=ttl, **options)
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)

    def _path_for(self, chat_id: str) -> Path:
        # Percent-encoding keeps distinct chat ids on distinct files
        safe_name = quote(chat_id, safe="@+")
        return self.storage_path / f"{safe_name}.json"

    def _read(self, path: Path) -> Optional[ThreadSnapshot]:
        try:
            return ThreadSnapshot.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def _get_sync(self, chat_id: str) -> Optional[ThreadSnapshot]:
        path = self._path_for(chat_id)
        snapshot = self._read(path)
        if snapshot is None:
            return None
        if snapshot.chat_id != chat_id:
            logger.warning(f"{path.name} holds thread {snapshot.chat_id}, not {chat_id}")
            return None
        if self.is_expired(snapshot.last_used):
            logger.info(f"Thread {chat_id} expired, deleting {path.name}")
            path.unlink(missing_ok=True)
            return None
        return snapshot

    def _save_sync(self, snapshot: ThreadSnapshot) -> bool:
        path = self._path_for(snapshot.chat_id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(snapshot.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(path)
        return True

    def _delete_sync(self, chat_id: str) -> bool:
        path = self._path_for(chat_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def _list_sync(self, query: Optional[Dict[str, Any]]) -> List[ThreadSnapshot]:
        now = time.time()
        snapshots = []
        for path in sorted(self.storage_path.glob("*.json")):
            snapshot = self._read(path)
            if snapshot and not self.is_expired(snapshot.last_used, now) and _matches(snapshot, query):
                snapshots.append(snapshot)
        return snapshots

    async def get(self, chat_id: str) -> Optional[ThreadSnapshot]:
        return await self._run(self._get_sync, chat_id)

    async def save(self, snapshot: ThreadSnapshot) -> bool:
        return await self._run(self._save_sync, snapshot)

    async def delete(self, chat_id: str) -> bool:
        return await self._run(self._delete_sync, chat_id)

    async def list_all(self, query: Optional[Dict[str, Any]] = None) -> List[ThreadSnapshot]:
        return await self._run(self._list_sync, query)


StorageFactory = Callable[..., ThreadStorage]


class StorageRegistry:
    """Resolves storage adapters by provider name"""

    def __init__(self, include_builtins: bool = True):
        self._factories: Dict[str, StorageFactory] = {}
        if include_builtins:
            self.register("memory", MemoryThreadStorage)
            self.register("sql", SQLThreadStorage)
            self.register("mongodb", MongoDBThreadStorage)
            self.register("file", FileThreadStorage)

    def register(self, name: str, factory: StorageFactory) -> 'StorageRegistry':
        """Register a storage adapter factory under a provider name"""
        self._factories[name] = factory
        return self

    def names(self) -> List[str]:
        return sorted(self._factories)

    def create(self, name: str, **options) -> ThreadStorage:
        factory = self._factories.get(name)
        if factory is None:
            raise UnsupportedProviderError("storage", name)
        return factory(**options)
