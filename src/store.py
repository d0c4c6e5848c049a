"""
Object Store - PostgreSQL-backed authoritative store for platform objects.

Stores Kubernetes-style objects keyed by (apiVersion, kind, namespace, name)
with optimistic concurrency on resourceVersion, finalizer-aware deletion,
and a directory of Promise-declared API types.
"""

import copy
import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import asyncpg

from errors import AlreadyExistsError, ConflictError, InvalidObjectError, NotFoundError
from events import EventBus, EventType, ObjectEvent
from migrate import run_migrations
from models import (
    BUILTIN_TYPES,
    APITypeDefinition,
    GroupVersionKind,
    matches_resource,
    split_resource,
)
from validation import validate_object_against_schema

logger = logging.getLogger(__name__)

# Metadata fields owned by the store; client-supplied values are ignored
_SERVER_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _loads(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


class ObjectStore:
    """Manages the PostgreSQL object store for the platform."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        event_bus: Optional[EventBus] = None,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.event_bus = event_bus
        self.pool: Optional[asyncpg.Pool] = None

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
            command_timeout=60,
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
        if self.pool is None:
            raise RuntimeError(
                "Store not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Object store schema initialized")

    async def _publish(self, event_type: EventType, obj: Dict[str, Any]) -> None:
        if self.event_bus is not None:
            await self.event_bus.publish(ObjectEvent.from_object(event_type, obj))

    # ==================== API Type Methods ====================

    async def create_api_type(self, definition: APITypeDefinition) -> None:
        """
        Register a new API type.

        Raises:
            AlreadyExistsError: If the group/version/kind is already served.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            type_id = await conn.fetchval(
                """
                INSERT INTO api_types
                    (group_name, version, kind, plural, scope, schema, definition)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (group_name, version, kind) DO NOTHING
                RETURNING id
                """,
                definition.group,
                definition.version,
                definition.kind,
                definition.plural,
                definition.scope,
                json.dumps(definition.schema),
                json.dumps(definition.definition),
            )

        if type_id is None:
            raise AlreadyExistsError(f"API type {definition.name} already exists")
        logger.info(f"Created API type {definition.name} ({definition.gvk})")

    async def get_api_type(
        self, kind: GroupVersionKind
    ) -> Optional[APITypeDefinition]:
        """Get a Promise-declared API type, or None."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM api_types
                WHERE group_name = $1 AND version = $2 AND kind = $3
                """,
                kind.group,
                kind.version,
                kind.kind,
            )
        if not row:
            return None
        return self._parse_api_type_row(row)

    async def is_api_type_served(self, kind: GroupVersionKind) -> bool:
        """Check whether objects of this kind can be stored and queried yet."""
        if any(t.gvk == kind for t in BUILTIN_TYPES):
            return True
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            established = await conn.fetchval(
                """
                SELECT established FROM api_types
                WHERE group_name = $1 AND version = $2 AND kind = $3
                """,
                kind.group,
                kind.version,
                kind.kind,
            )
        return bool(established)

    async def list_api_types(self) -> List[APITypeDefinition]:
        """List built-in and Promise-declared API types."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM api_types ORDER BY group_name, kind, version"
            )
        return list(BUILTIN_TYPES) + [self._parse_api_type_row(r) for r in rows]

    async def find_api_type(self, resource: str) -> Optional[APITypeDefinition]:
        """
        Look up an API type by kubectl-style resource name
        (``redis.redis.opstreelabs.in``, ``works``, ``Promise``).
        """
        for builtin in BUILTIN_TYPES:
            if matches_resource(builtin, resource):
                return builtin

        name, group = split_resource(resource)
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            query = (
                "SELECT * FROM api_types "
                "WHERE (LOWER(kind) = $1 OR LOWER(plural) = $1)"
            )
            params: List[Any] = [name]
            if group:
                query += " AND group_name = $2"
                params.append(group)
            query += " ORDER BY created_at LIMIT 1"
            row = await conn.fetchrow(query, *params)
        if not row:
            return None
        return self._parse_api_type_row(row)

    async def resolve_api_type(self, resource: str) -> Optional[GroupVersionKind]:
        """Resolve a kubectl-style resource name to its group/version/kind."""
        definition = await self.find_api_type(resource)
        return definition.gvk if definition else None

    async def delete_api_type(self, kind: GroupVersionKind) -> bool:
        """Remove a Promise-declared API type. Returns False if absent."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            deleted = await conn.fetchval(
                """
                DELETE FROM api_types
                WHERE group_name = $1 AND version = $2 AND kind = $3
                RETURNING id
                """,
                kind.group,
                kind.version,
                kind.kind,
            )
        if deleted:
            logger.info(f"Deleted API type {kind}")
            return True
        return False

    def _parse_api_type_row(self, row: asyncpg.Record) -> APITypeDefinition:
        return APITypeDefinition(
            group=row["group_name"],
            version=row["version"],
            kind=row["kind"],
            plural=row["plural"],
            scope=row["scope"],
            schema=_loads(row["schema"], {}),
            definition=_loads(row["definition"], {}),
        )

    # ==================== Object Methods ====================

    async def _validate(self, obj: Dict[str, Any]) -> None:
        """Validate an object's shape and, for declared types, its schema."""
        metadata = obj.get("metadata")
        if not obj.get("apiVersion") or not obj.get("kind"):
            raise InvalidObjectError("Object must set apiVersion and kind")
        if not isinstance(metadata, dict) or not metadata.get("name"):
            raise InvalidObjectError("Object must set metadata.name")

        kind = GroupVersionKind.of(obj)
        if any(t.gvk == kind for t in BUILTIN_TYPES):
            return
        definition = await self.get_api_type(kind)
        if definition is None:
            return
        is_valid, error = validate_object_against_schema(obj, definition.schema)
        if not is_valid:
            raise InvalidObjectError(
                f"{kind.kind} {metadata['name']} is invalid: {error}"
            )

    async def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a new object.

        Returns:
            The stored object, including server-assigned metadata.

        Raises:
            AlreadyExistsError: If an object with the same identity exists.
            InvalidObjectError: If the object fails validation.
        """
        self._ensure_connected()
        await self._validate(obj)

        body = copy.deepcopy(obj)
        metadata = body["metadata"]
        for key in _SERVER_METADATA:
            metadata.pop(key, None)
        namespace = metadata.get("namespace", "")
        labels = metadata.get("labels") or {}
        finalizers = metadata.get("finalizers") or []

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO objects (
                    api_version, kind, namespace, name, uid,
                    labels, finalizers, body, spec_hash
                )
                VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8::jsonb, $9)
                ON CONFLICT (api_version, kind, namespace, name) DO NOTHING
                RETURNING *
                """,
                body["apiVersion"],
                body["kind"],
                namespace,
                metadata["name"],
                uuid.uuid4(),
                json.dumps(labels),
                json.dumps(finalizers),
                json.dumps(body),
                self._calculate_spec_hash(body.get("spec")),
            )

        if row is None:
            raise AlreadyExistsError(
                f"{body['kind']} {namespace}/{metadata['name']} already exists"
            )

        created = self._parse_object_row(row)
        logger.debug(
            f"Created {created['kind']} {namespace}/{metadata['name']} "
            f"(resourceVersion {created['metadata']['resourceVersion']})"
        )
        await self._publish(EventType.ADDED, created)
        return created

    async def get(
        self, kind: GroupVersionKind, namespace: str, name: str
    ) -> Dict[str, Any]:
        """
        Get an object by identity.

        Raises:
            NotFoundError: If no such object exists.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM objects
                WHERE api_version = $1 AND kind = $2
                  AND namespace = $3 AND name = $4
                """,
                kind.api_version,
                kind.kind,
                namespace or "",
                name,
            )
        if not row:
            raise NotFoundError(f"{kind.kind} {namespace}/{name} not found")
        return self._parse_object_row(row)

    async def list(
        self,
        kind: GroupVersionKind,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        """List objects of a kind, optionally filtered by namespace and labels."""
        self._ensure_connected()
        query = "SELECT * FROM objects WHERE api_version = $1 AND kind = $2"
        params: List[Any] = [kind.api_version, kind.kind]

        if namespace is not None:
            params.append(namespace)
            query += f" AND namespace = ${len(params)}"

        if label_selector:
            params.append(json.dumps(label_selector))
            query += f" AND labels @> ${len(params)}::jsonb"

        query += " ORDER BY namespace, name"

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [self._parse_object_row(row) for row in rows]

    async def update(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Conditionally replace an object (compare-and-swap on resourceVersion).

        If the object is marked for deletion and the update leaves it without
        finalizers, it is removed from the store.

        Returns:
            The stored object after the update.

        Raises:
            ConflictError: If metadata.resourceVersion is stale or missing.
            NotFoundError: If the object no longer exists.
            InvalidObjectError: If the object fails validation.
        """
        self._ensure_connected()
        await self._validate(obj)

        body = copy.deepcopy(obj)
        metadata = body["metadata"]
        expected = metadata.get("resourceVersion")
        if not expected:
            raise ConflictError("Update requires metadata.resourceVersion")
        for key in _SERVER_METADATA:
            metadata.pop(key, None)

        kind = GroupVersionKind.of(body)
        namespace = metadata.get("namespace", "")
        name = metadata["name"]

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE objects
                    SET labels = $1::jsonb,
                        finalizers = $2::jsonb,
                        body = $3::jsonb,
                        generation = CASE
                            WHEN spec_hash <> $4 THEN generation + 1
                            ELSE generation
                        END,
                        spec_hash = $4,
                        resource_version = nextval('resource_version_seq'),
                        updated_at = NOW()
                    WHERE api_version = $5 AND kind = $6
                      AND namespace = $7 AND name = $8
                      AND resource_version = $9
                    RETURNING *
                    """,
                    json.dumps(metadata.get("labels") or {}),
                    json.dumps(metadata.get("finalizers") or []),
                    json.dumps(body),
                    self._calculate_spec_hash(body.get("spec")),
                    kind.api_version,
                    kind.kind,
                    namespace,
                    name,
                    int(expected),
                )

                if row is None:
                    exists = await conn.fetchval(
                        """
                        SELECT 1 FROM objects
                        WHERE api_version = $1 AND kind = $2
                          AND namespace = $3 AND name = $4
                        """,
                        kind.api_version,
                        kind.kind,
                        namespace,
                        name,
                    )
                    if exists:
                        raise ConflictError(
                            f"{kind.kind} {namespace}/{name} has been modified "
                            f"(resourceVersion {expected} is stale)"
                        )
                    raise NotFoundError(f"{kind.kind} {namespace}/{name} not found")

                updated = self._parse_object_row(row)
                removed = False
                if row["deletion_timestamp"] is not None and not updated[
                    "metadata"
                ].get("finalizers"):
                    await conn.execute("DELETE FROM objects WHERE id = $1", row["id"])
                    removed = True

        if removed:
            logger.info(f"Removed {kind.kind} {namespace}/{name}: finalizers cleared")
            await self._publish(EventType.DELETED, updated)
        else:
            await self._publish(EventType.MODIFIED, updated)
        return updated

    async def delete(
        self, kind: GroupVersionKind, namespace: str, name: str
    ) -> Optional[Dict[str, Any]]:
        """
        Delete an object.

        Objects that still carry finalizers are only marked for deletion
        (metadata.deletionTimestamp); the finalizer owners remove them.

        Returns:
            The marked object, or None if it was removed outright.

        Raises:
            NotFoundError: If no such object exists.
        """
        self._ensure_connected()
        namespace = namespace or ""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    SELECT * FROM objects
                    WHERE api_version = $1 AND kind = $2
                      AND namespace = $3 AND name = $4
                    FOR UPDATE
                    """,
                    kind.api_version,
                    kind.kind,
                    namespace,
                    name,
                )
                if row is None:
                    raise NotFoundError(f"{kind.kind} {namespace}/{name} not found")

                current = self._parse_object_row(row)
                if current["metadata"].get("finalizers"):
                    if row["deletion_timestamp"] is not None:
                        return current
                    marked_row = await conn.fetchrow(
                        """
                        UPDATE objects
                        SET deletion_timestamp = NOW(),
                            resource_version = nextval('resource_version_seq'),
                            updated_at = NOW()
                        WHERE id = $1
                        RETURNING *
                        """,
                        row["id"],
                    )
                    marked = self._parse_object_row(marked_row)
                else:
                    await conn.execute("DELETE FROM objects WHERE id = $1", row["id"])
                    marked = None

        if marked is not None:
            logger.info(
                f"Marked {kind.kind} {namespace}/{name} for deletion; waiting on "
                f"finalizers {marked['metadata']['finalizers']}"
            )
            await self._publish(EventType.MODIFIED, marked)
            return marked

        logger.info(f"Deleted {kind.kind} {namespace}/{name}")
        await self._publish(EventType.DELETED, current)
        return None

    def _parse_object_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        """
        Rebuild an object dict from a database row.

        The stored body carries the client-owned fields; server-owned
        metadata comes from the row's columns.
        """
        obj = _loads(row["body"], {})
        metadata = obj.setdefault("metadata", {})
        if row["namespace"]:
            metadata["namespace"] = row["namespace"]
        metadata["uid"] = str(row["uid"])
        metadata["resourceVersion"] = str(row["resource_version"])
        metadata["generation"] = row["generation"]
        metadata["creationTimestamp"] = _iso(row["created_at"])
        metadata["labels"] = _loads(row["labels"], {})
        metadata["finalizers"] = _loads(row["finalizers"], [])
        if row["deletion_timestamp"] is not None:
            metadata["deletionTimestamp"] = _iso(row["deletion_timestamp"])
        return obj

    def _calculate_spec_hash(self, spec: Any) -> str:
        """Calculate a hash of an object's spec for generation tracking."""
        spec_string = json.dumps(spec or {}, sort_keys=True)
        return hashlib.sha256(spec_string.encode()).hexdigest()
