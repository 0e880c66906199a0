"""
Postgres Store - PostgreSQL-backed ExternalStore.

Objects live as JSONB documents in a single table keyed by group, kind,
namespace and name. Resource versions come from a sequence, so every write
gets a fresh, monotonically increasing version. Read-modify-write operations
lock the row for the duration of their transaction; the version check
against the caller's expected version is what rejects stale writes.
"""

import asyncio
import copy
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import asyncpg

from config import DatabaseConfig
from errors import AlreadyExistsError, NotFoundError, TransientStoreError
from resources import ResourceRef, get_finalizers, is_terminating, merge_patch, now_rfc3339
from store import (
    ExternalStore,
    WatchEvent,
    WatchEventType,
    check_version,
    decode_patch,
    stamp_created,
    stamp_updated,
)

logger = logging.getLogger(__name__)

WATCH_CHANNEL = "object_events"

SCHEMA = """
CREATE SEQUENCE IF NOT EXISTS object_resource_version;

CREATE TABLE IF NOT EXISTS objects (
    api_group VARCHAR(253) NOT NULL,
    kind VARCHAR(63) NOT NULL,
    namespace VARCHAR(253) NOT NULL DEFAULT '',
    name VARCHAR(253) NOT NULL,
    uid VARCHAR(36) NOT NULL,
    resource_version BIGINT NOT NULL,
    body JSONB NOT NULL,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMP NOT NULL DEFAULT NOW(),
    PRIMARY KEY (api_group, kind, namespace, name)
);

CREATE INDEX IF NOT EXISTS idx_objects_labels
    ON objects USING GIN ((body -> 'metadata' -> 'labels'));
"""

# Driver failures that a retry on a later reconciliation can get past
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PostgresStore(ExternalStore):
    """Stores objects in PostgreSQL through an asyncpg connection pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "PostgresStore":
        """Create a store from a DatabaseConfig."""
        return cls(
            host=config.host,
            port=config.port,
            database=config.database,
            user=config.user,
            password=config.password,
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Create the objects table and version sequence if missing."""
        async with self._connection() as conn:
            await conn.execute(SCHEMA)
        logger.info("Database schema initialized")

    @asynccontextmanager
    async def _connection(self):
        """Acquire a connection, converting driver failures to TransientStoreError."""
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except DRIVER_ERRORS as e:
            raise TransientStoreError(f"Database error: {e}") from e

    @asynccontextmanager
    async def _transaction(self):
        async with self._connection() as conn:
            async with conn.transaction():
                yield conn

    @staticmethod
    def _key(ref: ResourceRef) -> Tuple[str, str, str, str]:
        return (ref.group, ref.kind, ref.namespace, ref.name)

    @staticmethod
    def _parse_body(body: Any) -> Dict[str, Any]:
        """Decode a JSONB column, which asyncpg returns as text by default."""
        return json.loads(body) if isinstance(body, str) else dict(body)

    # ==================== Reads ====================

    async def get(self, ref: ResourceRef) -> Dict[str, Any]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT body FROM objects
                WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
                """,
                *self._key(ref),
            )
        if not row:
            raise NotFoundError(f"{ref} not found", ref=ref)
        return self._parse_body(row["body"])

    async def list(
        self,
        group: str,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT body FROM objects WHERE api_group = $1 AND kind = $2"
        params: List[Any] = [group, kind]
        param_count = 2

        if namespace is not None:
            param_count += 1
            query += f" AND namespace = ${param_count}"
            params.append(namespace)

        if labels:
            param_count += 1
            query += f" AND body -> 'metadata' -> 'labels' @> ${param_count}::jsonb"
            params.append(json.dumps(labels))

        query += " ORDER BY namespace, name"

        async with self._connection() as conn:
            rows = await conn.fetch(query, *params)
        return [self._parse_body(row["body"]) for row in rows]

    # ==================== Writes ====================

    async def _next_version(self, conn: asyncpg.Connection) -> str:
        version = await conn.fetchval("SELECT nextval('object_resource_version')")
        return str(version)

    async def _lock(self, conn: asyncpg.Connection, ref: ResourceRef) -> Dict[str, Any]:
        row = await conn.fetchrow(
            """
            SELECT body FROM objects
            WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
            FOR UPDATE
            """,
            *self._key(ref),
        )
        if not row:
            raise NotFoundError(f"{ref} not found", ref=ref)
        return self._parse_body(row["body"])

    async def _notify(
        self, conn: asyncpg.Connection, event_type: WatchEventType, obj: Dict[str, Any]
    ) -> None:
        ref = ResourceRef.from_object(obj)
        payload = {
            "type": event_type.value,
            "apiVersion": obj.get("apiVersion", ""),
            "group": ref.group,
            "kind": ref.kind,
            "namespace": ref.namespace,
            "name": ref.name,
        }
        await conn.execute("SELECT pg_notify($1, $2)", WATCH_CHANNEL, json.dumps(payload))

    async def _write(
        self,
        conn: asyncpg.Connection,
        ref: ResourceRef,
        previous: Dict[str, Any],
        current: Dict[str, Any],
    ) -> Dict[str, Any]:
        version = await self._next_version(conn)
        if stamp_updated(previous, current, version):
            await conn.execute(
                """
                DELETE FROM objects
                WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
                """,
                *self._key(ref),
            )
            logger.info(f"Removed {ref}: finalizers cleared")
            await self._notify(conn, WatchEventType.DELETED, current)
            return current

        await conn.execute(
            """
            UPDATE objects
            SET resource_version = $5, body = $6, updated_at = NOW()
            WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
            """,
            *self._key(ref),
            int(version),
            json.dumps(current),
        )
        await self._notify(conn, WatchEventType.MODIFIED, current)
        return current

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        async with self._transaction() as conn:
            version = await self._next_version(conn)
            created = stamp_created(copy.deepcopy(obj), version)
            ref = ResourceRef.from_object(created)

            inserted = await conn.fetchval(
                """
                INSERT INTO objects
                    (api_group, kind, namespace, name, uid, resource_version, body)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT DO NOTHING
                RETURNING resource_version
                """,
                *self._key(ref),
                created["metadata"]["uid"],
                int(version),
                json.dumps(created),
            )
            if inserted is None:
                raise AlreadyExistsError(f"{ref} already exists", ref=ref)

            await self._notify(conn, WatchEventType.ADDED, created)

        logger.info(f"Created {ref} at version {version}")
        return created

    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ref = ResourceRef.from_object(obj)
        async with self._transaction() as conn:
            previous = await self._lock(conn, ref)
            check_version(previous, (obj.get("metadata") or {}).get("resourceVersion"), ref)

            current = copy.deepcopy(obj)
            if "status" in previous:
                current["status"] = previous["status"]
            else:
                current.pop("status", None)
            return await self._write(conn, ref, previous, current)

    async def update_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        ref = ResourceRef.from_object(obj)
        async with self._transaction() as conn:
            previous = await self._lock(conn, ref)
            check_version(previous, (obj.get("metadata") or {}).get("resourceVersion"), ref)

            current = copy.deepcopy(previous)
            current["status"] = copy.deepcopy(obj.get("status"))
            return await self._write(conn, ref, previous, current)

    async def patch(
        self, ref: ResourceRef, patch: bytes, expected_version: Optional[str]
    ) -> Dict[str, Any]:
        document = decode_patch(patch)
        async with self._transaction() as conn:
            previous = await self._lock(conn, ref)
            check_version(previous, expected_version, ref)
            return await self._write(conn, ref, previous, merge_patch(previous, document))

    async def delete(self, ref: ResourceRef) -> None:
        async with self._transaction() as conn:
            previous = await self._lock(conn, ref)

            if get_finalizers(previous):
                if is_terminating(previous):
                    return
                current = copy.deepcopy(previous)
                version = await self._next_version(conn)
                stamp_updated(previous, current, version)
                current["metadata"]["deletionTimestamp"] = now_rfc3339()
                await conn.execute(
                    """
                    UPDATE objects
                    SET resource_version = $5, body = $6, updated_at = NOW()
                    WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
                    """,
                    *self._key(ref),
                    int(version),
                    json.dumps(current),
                )
                logger.info(f"Marked {ref} for deletion, waiting on finalizers")
                await self._notify(conn, WatchEventType.MODIFIED, current)
                return

            await conn.execute(
                """
                DELETE FROM objects
                WHERE api_group = $1 AND kind = $2 AND namespace = $3 AND name = $4
                """,
                *self._key(ref),
            )
            logger.info(f"Deleted {ref}")
            await self._notify(conn, WatchEventType.DELETED, previous)

    # ==================== Watch ====================

    async def watch(self, group: str, kind: str) -> AsyncIterator[WatchEvent]:
        """
        Stream changes through LISTEN/NOTIFY.

        Notifications carry only the object's identity; the current body is
        read when the event is delivered. Objects deleted before delivery
        are reported by the DELETED notification that follows.
        """
        self._ensure_connected()
        queue: asyncio.Queue = asyncio.Queue()

        def on_notify(connection, pid, channel, payload):
            queue.put_nowait(json.loads(payload))

        conn = await self.pool.acquire()
        try:
            await conn.add_listener(WATCH_CHANNEL, on_notify)
            while True:
                message = await queue.get()
                if message["group"] != group or message["kind"] != kind:
                    continue

                event_type = WatchEventType(message["type"])
                if event_type == WatchEventType.DELETED:
                    obj = {
                        "apiVersion": message["apiVersion"],
                        "kind": message["kind"],
                        "metadata": {
                            "namespace": message["namespace"],
                            "name": message["name"],
                        },
                    }
                else:
                    ref = ResourceRef(
                        message["group"],
                        message["kind"],
                        message["namespace"],
                        message["name"],
                    )
                    try:
                        obj = await self.get(ref)
                    except NotFoundError:
                        continue
                yield WatchEvent(event_type, obj)
        finally:
            await conn.remove_listener(WATCH_CHANNEL, on_notify)
            await self.pool.release(conn)
