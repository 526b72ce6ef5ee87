"""
Database Manager - PostgreSQL-backed record store.

Stores resources and resource groups. Enforces the deletion invariant:
a resource row is deleted only when it is marked for deletion and has no
finalizers left, in the same transaction as the write that makes it so.
"""

import json
import logging
from typing import Any, Dict, List, Optional

import asyncpg

from migrate import run_migrations
from store import (
    GroupPhase,
    ManagedResource,
    NamespacedName,
    RecordNotFoundError,
    ResourceGroup,
    Store,
)
from watch import DEFAULT_CHANNEL, RecordKind, WatchEventType

logger = logging.getLogger(__name__)


class DatabaseManager(Store):
    """Manages PostgreSQL database operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
        command_timeout: float = 60.0,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.command_timeout = command_timeout
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
            command_timeout=self.command_timeout,
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
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Resource Group Methods ====================

    async def create_group(
        self,
        namespace: str,
        name: str,
        spec: Optional[Dict[str, Any]] = None,
        phase: str = GroupPhase.ACTIVE,
    ) -> ResourceGroup:
        """
        Create a new resource group.

        Args:
            namespace: Group namespace
            name: Group name
            spec: Group configuration (opaque)
            phase: Initial phase ('pending' or 'active')
        """
        if spec is None:
            spec = {}

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO resource_groups (namespace, name, spec, phase)
                VALUES ($1, $2, $3, $4)
                RETURNING *
                """,
                namespace,
                name,
                json.dumps(spec),
                phase,
            )

            logger.info(f"Created resource group {namespace}/{name}")
            return self._parse_group_row(row)

    async def get_group(self, identity: NamespacedName) -> ResourceGroup:
        """
        Get a resource group.

        Raises:
            RecordNotFoundError: If the group does not exist
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM resource_groups WHERE namespace = $1 AND name = $2",
                identity.namespace,
                identity.name,
            )
            if not row:
                raise RecordNotFoundError("ResourceGroup", identity)

            return self._parse_group_row(row)

    async def list_groups(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[ResourceGroup]:
        """List resource groups, optionally in a single namespace."""
        async with self.pool.acquire() as conn:
            if namespace:
                rows = await conn.fetch(
                    """
                    SELECT * FROM resource_groups
                    WHERE namespace = $1
                    ORDER BY namespace, name
                    LIMIT $2
                    """,
                    namespace,
                    limit,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM resource_groups ORDER BY namespace, name LIMIT $1",
                    limit,
                )
            return [self._parse_group_row(row) for row in rows]

    async def update_group(
        self,
        identity: NamespacedName,
        spec: Optional[Dict[str, Any]] = None,
        phase: Optional[str] = None,
    ) -> ResourceGroup:
        """
        Update a resource group's spec and/or phase.

        The generation is bumped only when the spec actually changes.

        Raises:
            RecordNotFoundError: If the group does not exist
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    """
                    SELECT * FROM resource_groups
                    WHERE namespace = $1 AND name = $2
                    FOR UPDATE
                    """,
                    identity.namespace,
                    identity.name,
                )
                if not current:
                    raise RecordNotFoundError("ResourceGroup", identity)

                group = self._parse_group_row(current)
                new_spec = spec if spec is not None else group.spec
                new_phase = phase if phase is not None else group.phase
                generation = group.generation
                if new_spec != group.spec:
                    generation += 1

                row = await conn.fetchrow(
                    """
                    UPDATE resource_groups
                    SET spec = $1, phase = $2, generation = $3, updated_at = NOW()
                    WHERE id = $4
                    RETURNING *
                    """,
                    json.dumps(new_spec),
                    new_phase,
                    generation,
                    group.id,
                )

            logger.info(
                f"Updated resource group {identity} "
                f"(generation {generation}, phase {new_phase})"
            )
            return self._parse_group_row(row)

    async def delete_group(self, identity: NamespacedName) -> None:
        """
        Delete a resource group.

        Raises:
            RecordNotFoundError: If the group does not exist
            ValueError: If resources still reference the group
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                # Blocks resource writes that reference this group until commit
                await self._lock_group(conn, identity, "FOR UPDATE")

                count = await conn.fetchval(
                    """
                    SELECT COUNT(*) FROM resources
                    WHERE group_namespace = $1 AND group_name = $2
                    """,
                    identity.namespace,
                    identity.name,
                )
                if count:
                    raise ValueError(
                        f"Cannot delete resource group {identity}: "
                        f"{count} resource(s) still reference it"
                    )

                await conn.execute(
                    """
                    DELETE FROM resource_groups
                    WHERE namespace = $1 AND name = $2
                    """,
                    identity.namespace,
                    identity.name,
                )

            logger.info(f"Deleted resource group {identity}")

    # ==================== Resource Methods ====================

    async def create_resource(
        self,
        namespace: str,
        name: str,
        spec: Optional[Dict[str, Any]] = None,
        group: Optional[NamespacedName] = None,
    ) -> ManagedResource:
        """
        Create a new resource.

        Resources start without finalizers; the controller adds its own on
        the first reconcile.

        Args:
            namespace: Resource namespace
            name: Resource name
            spec: Resource specification (opaque)
            group: Resource group the resource belongs to

        Raises:
            RecordNotFoundError: If the group does not exist
        """
        if spec is None:
            spec = {}

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if group is not None:
                    await self._lock_group(conn, group, "FOR SHARE")
                row = await conn.fetchrow(
                    """
                    INSERT INTO resources (
                        namespace, name, group_namespace, group_name, spec
                    )
                    VALUES ($1, $2, $3, $4, $5)
                    RETURNING *
                    """,
                    namespace,
                    name,
                    group.namespace if group else None,
                    group.name if group else None,
                    json.dumps(spec),
                )

            logger.info(
                f"Created resource {namespace}/{name}"
                + (f" in group {group}" if group else "")
            )
            return self._parse_resource_row(row)

    async def update_resource(
        self,
        identity: NamespacedName,
        spec: Optional[Dict[str, Any]] = None,
        group: Optional[NamespacedName] = None,
        clear_group: bool = False,
    ) -> ManagedResource:
        """
        Update a resource's spec and/or group.

        The generation is bumped when either changes.

        Raises:
            RecordNotFoundError: If the resource does not exist
                or the new group does not exist
            ValueError: If the resource is being deleted
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    """
                    SELECT * FROM resources
                    WHERE namespace = $1 AND name = $2
                    FOR UPDATE
                    """,
                    identity.namespace,
                    identity.name,
                )
                if not current:
                    raise RecordNotFoundError("Resource", identity)

                resource = self._parse_resource_row(current)
                if resource.is_being_deleted:
                    raise ValueError(f"Resource {identity} is being deleted")
                if group is not None and not clear_group:
                    await self._lock_group(conn, group, "FOR SHARE")

                new_spec = spec if spec is not None else resource.spec
                new_group = None if clear_group else (group or resource.group)
                generation = resource.generation
                if new_spec != resource.spec or new_group != resource.group:
                    generation += 1

                row = await conn.fetchrow(
                    """
                    UPDATE resources
                    SET spec = $1,
                        group_namespace = $2,
                        group_name = $3,
                        generation = $4,
                        updated_at = NOW()
                    WHERE id = $5
                    RETURNING *
                    """,
                    json.dumps(new_spec),
                    new_group.namespace if new_group else None,
                    new_group.name if new_group else None,
                    generation,
                    resource.id,
                )

            logger.info(f"Updated resource {identity} (generation {generation})")
            return self._parse_resource_row(row)

    async def get_resource(self, identity: NamespacedName) -> ManagedResource:
        """
        Get a resource, including one pending deletion.

        Raises:
            RecordNotFoundError: If the resource does not exist
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM resources WHERE namespace = $1 AND name = $2",
                identity.namespace,
                identity.name,
            )
            if not row:
                raise RecordNotFoundError("Resource", identity)

            return self._parse_resource_row(row)

    async def list_resources(
        self,
        namespace: Optional[str] = None,
        group: Optional[NamespacedName] = None,
        limit: Optional[int] = None,
    ) -> List[ManagedResource]:
        """List resources with optional filters."""
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM resources WHERE TRUE"
            params = []
            param_count = 0

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            if group:
                param_count += 2
                query += (
                    f" AND group_namespace = ${param_count - 1}"
                    f" AND group_name = ${param_count}"
                )
                params.extend([group.namespace, group.name])

            query += " ORDER BY namespace, name"

            if limit is not None:
                param_count += 1
                query += f" LIMIT ${param_count}"
                params.append(limit)

            rows = await conn.fetch(query, *params)
            return [self._parse_resource_row(row) for row in rows]

    async def mark_resource_for_deletion(self, identity: NamespacedName) -> bool:
        """
        Set the deletion marker on a resource.

        The marker is never cleared once set. A resource without
        finalizers is removed immediately.

        Returns:
            True if the resource was removed, False if finalizers retain it

        Raises:
            RecordNotFoundError: If the resource does not exist
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                resource_id = await conn.fetchval(
                    """
                    UPDATE resources
                    SET deleted_at = COALESCE(deleted_at, NOW()),
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING id
                    """,
                    identity.namespace,
                    identity.name,
                )
                if resource_id is None:
                    raise RecordNotFoundError("Resource", identity)

                removed = await self._delete_if_unguarded(conn, resource_id)

        if removed:
            logger.info(f"Deleted resource {identity}")
        else:
            logger.info(f"Marked resource {identity} for deletion")
        return removed

    async def add_finalizers(self, identity: NamespacedName, *finalizers: str) -> None:
        """
        Add finalizers to a resource.

        Finalizers already present are not duplicated. New finalizers cannot
        be added to a resource that is being deleted.

        Raises:
            RecordNotFoundError: If the resource does not exist
            ValueError: If the resource is being deleted
        """
        async with self.pool.acquire() as conn:
            resource_id = await conn.fetchval(
                """
                UPDATE resources
                SET finalizers = finalizers || (
                        SELECT COALESCE(jsonb_agg(DISTINCT f), '[]'::jsonb)
                        FROM unnest($3::text[]) AS f
                        WHERE NOT finalizers ? f
                    ),
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2 AND deleted_at IS NULL
                RETURNING id
                """,
                identity.namespace,
                identity.name,
                list(finalizers),
            )
            if resource_id is None:
                exists = await conn.fetchval(
                    "SELECT id FROM resources WHERE namespace = $1 AND name = $2",
                    identity.namespace,
                    identity.name,
                )
                if exists is None:
                    raise RecordNotFoundError("Resource", identity)
                raise ValueError(
                    f"Cannot add finalizers to resource {identity}: being deleted"
                )

    async def remove_finalizers(
        self, identity: NamespacedName, *finalizers: str
    ) -> None:
        """
        Remove finalizers from a resource.

        Deletes the resource in the same transaction if it is marked for
        deletion and no finalizers remain.

        Raises:
            RecordNotFoundError: If the resource does not exist
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                resource_id = await conn.fetchval(
                    """
                    UPDATE resources
                    SET finalizers = COALESCE(
                            (SELECT jsonb_agg(elem)
                             FROM jsonb_array_elements(finalizers) AS elem
                             WHERE NOT (elem #>> '{}' = ANY($3::text[]))),
                            '[]'::jsonb
                        ),
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING id
                    """,
                    identity.namespace,
                    identity.name,
                    list(finalizers),
                )
                if resource_id is None:
                    raise RecordNotFoundError("Resource", identity)

                removed = await self._delete_if_unguarded(conn, resource_id)

        if removed:
            logger.info(f"Deleted resource {identity}: all finalizers removed")

    async def _lock_group(
        self, conn: asyncpg.Connection, group: NamespacedName, mode: str
    ) -> None:
        """Lock a group row for the rest of the transaction."""
        found = await conn.fetchval(
            f"""
            SELECT id FROM resource_groups
            WHERE namespace = $1 AND name = $2
            {mode}
            """,
            group.namespace,
            group.name,
        )
        if found is None:
            raise RecordNotFoundError("ResourceGroup", group)

    async def _delete_if_unguarded(
        self, conn: asyncpg.Connection, resource_id: int
    ) -> bool:
        """Delete a resource row if it is marked for deletion and unguarded."""
        deleted = await conn.fetchval(
            """
            DELETE FROM resources
            WHERE id = $1
              AND deleted_at IS NOT NULL
              AND finalizers = '[]'::jsonb
            RETURNING id
            """,
            resource_id,
        )
        return deleted is not None

    async def request_reconcile(self, identity: NamespacedName) -> None:
        """
        Ask running controllers to reconcile a resource now.

        Raises:
            RecordNotFoundError: If the resource does not exist
        """
        await self.get_resource(identity)
        payload = {
            "kind": RecordKind.RESOURCE,
            "op": WatchEventType.RECONCILE,
            "namespace": identity.namespace,
            "name": identity.name,
        }
        async with self.pool.acquire() as conn:
            await conn.execute(
                "SELECT pg_notify($1, $2)", DEFAULT_CHANNEL, json.dumps(payload)
            )

    # ==================== Row Parsing ====================

    @staticmethod
    def _load_json(value: Any, default: Any) -> Any:
        if value is None:
            return default
        return json.loads(value) if isinstance(value, str) else value

    def _parse_resource_row(self, row: asyncpg.Record) -> ManagedResource:
        """
        Parse a resource row from the database.

        Args:
            row: An asyncpg.Record from a query on the resources table

        Returns:
            A ManagedResource with JSON fields parsed
        """
        data = dict(row)
        group = None
        if data.get("group_namespace") and data.get("group_name"):
            group = NamespacedName(data["group_namespace"], data["group_name"])

        return ManagedResource(
            id=data.get("id"),
            namespace=data["namespace"],
            name=data["name"],
            spec=self._load_json(data.get("spec"), {}),
            status=self._load_json(data.get("status"), {}),
            group=group,
            finalizers=self._load_json(data.get("finalizers"), []),
            deletion_timestamp=data.get("deleted_at"),
            generation=data.get("generation", 1),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    def _parse_group_row(self, row: asyncpg.Record) -> ResourceGroup:
        """Parse a resource group row from the database."""
        data = dict(row)
        return ResourceGroup(
            id=data.get("id"),
            namespace=data["namespace"],
            name=data["name"],
            spec=self._load_json(data.get("spec"), {}),
            phase=data.get("phase", GroupPhase.ACTIVE),
            generation=data.get("generation", 1),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
