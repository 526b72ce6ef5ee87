"""
HTTP Input Plugin - REST API for resources and resource groups.

This plugin provides a FastAPI-based REST API that writes records to the
store. The controller picks the changes up from the store's notifications.
"""

import asyncio
import json
import logging
import os
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import asyncpg
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from events import DiagnosticEvent, EventBus
from plugins.inputs.base import InputPlugin
from store import (
    GroupPhase,
    ManagedResource,
    NamespacedName,
    RecordNotFoundError,
    ResourceGroup,
)

logger = logging.getLogger(__name__)

# Kubernetes-style name pattern: lowercase alphanumeric, hyphens, max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63
MAX_SPEC_SIZE = 1024 * 1024  # 1MB max for spec

DEFAULT_NAMESPACE = "default"


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters or '-', "
            f"must start and end with an alphanumeric character"
        )
    return value


def validate_json_size(
    value: Optional[Dict[str, Any]], field_name: str
) -> Optional[Dict[str, Any]]:
    """Validate that JSON data doesn't exceed size limits."""
    if value is not None:
        if len(json.dumps(value)) > MAX_SPEC_SIZE:
            raise ValueError(
                f"{field_name} exceeds maximum size of {MAX_SPEC_SIZE // 1024}KB"
            )
    return value


# Resource Group models


class GroupCreate(BaseModel):
    """Request model for creating a resource group."""

    namespace: str = Field(DEFAULT_NAMESPACE, description="Group namespace")
    name: str = Field(..., description="Group name", examples=["payments-mesh"])
    spec: Optional[Dict[str, Any]] = Field(None, description="Group configuration")
    phase: str = Field(GroupPhase.ACTIVE, description="'pending' or 'active'")

    @field_validator("namespace", "name")
    @classmethod
    def validate_names(cls, v: str, info) -> str:
        return validate_name_format(v, info.field_name)

    @field_validator("spec")
    @classmethod
    def validate_spec_size(
        cls, v: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        return validate_json_size(v, "spec")

    @field_validator("phase")
    @classmethod
    def validate_phase(cls, v: str) -> str:
        if v not in (GroupPhase.PENDING, GroupPhase.ACTIVE):
            raise ValueError("phase must be 'pending' or 'active'")
        return v


class GroupUpdate(BaseModel):
    """Request model for updating a resource group."""

    spec: Optional[Dict[str, Any]] = None
    phase: Optional[str] = None

    @field_validator("spec")
    @classmethod
    def validate_spec_size(
        cls, v: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        return validate_json_size(v, "spec")

    @field_validator("phase")
    @classmethod
    def validate_phase(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in (GroupPhase.PENDING, GroupPhase.ACTIVE):
            raise ValueError("phase must be 'pending' or 'active'")
        return v


class GroupResponse(BaseModel):
    """Response model for a resource group."""

    id: Optional[int] = None
    namespace: str
    name: str
    spec: Dict[str, Any] = {}
    phase: str
    generation: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# Resource models


class GroupRef(BaseModel):
    """Reference to a resource group; namespace defaults to the resource's."""

    namespace: Optional[str] = None
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "group.name")

    @field_validator("namespace")
    @classmethod
    def validate_namespace(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            validate_name_format(v, "group.namespace")
        return v

    def resolve(self, default_namespace: str) -> NamespacedName:
        return NamespacedName(self.namespace or default_namespace, self.name)


class ResourceCreate(BaseModel):
    """Request model for creating a resource."""

    namespace: str = Field(DEFAULT_NAMESPACE, description="Resource namespace")
    name: str = Field(..., description="Resource name", examples=["checkout-node"])
    group: Optional[GroupRef] = Field(None, description="Resource group reference")
    spec: Optional[Dict[str, Any]] = Field(None, description="Resource specification")

    @field_validator("namespace", "name")
    @classmethod
    def validate_names(cls, v: str, info) -> str:
        return validate_name_format(v, info.field_name)

    @field_validator("spec")
    @classmethod
    def validate_spec_size(
        cls, v: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        return validate_json_size(v, "spec")


class ResourceUpdate(BaseModel):
    """Request model for updating a resource."""

    spec: Optional[Dict[str, Any]] = None
    group: Optional[GroupRef] = None

    @field_validator("spec")
    @classmethod
    def validate_spec_size(
        cls, v: Optional[Dict[str, Any]]
    ) -> Optional[Dict[str, Any]]:
        return validate_json_size(v, "spec")


class ResourceResponse(BaseModel):
    """Response model for a resource."""

    id: Optional[int] = None
    namespace: str
    name: str
    group: Optional[str] = None
    spec: Dict[str, Any] = {}
    status: Dict[str, Any] = {}
    finalizers: List[str] = []
    generation: int
    deleting: bool = False
    deletion_timestamp: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_resource(cls, resource: ManagedResource) -> "ResourceResponse":
        return cls(
            id=resource.id,
            namespace=resource.namespace,
            name=resource.name,
            group=str(resource.group) if resource.group else None,
            spec=resource.spec,
            status=resource.status,
            finalizers=list(resource.finalizers),
            generation=resource.generation,
            deleting=resource.is_being_deleted,
            deletion_timestamp=resource.deletion_timestamp,
            created_at=resource.created_at,
            updated_at=resource.updated_at,
        )


class FinalizersUpdate(BaseModel):
    """Request model for updating finalizers on a resource."""

    add: List[str] = Field(default_factory=list, description="Finalizers to add")
    remove: List[str] = Field(default_factory=list, description="Finalizers to remove")


def _sse_response(event_bus: EventBus, filter_fn) -> StreamingResponse:
    subscriber_id, subscription = event_bus.subscribe(filter_fn)

    async def event_generator():
        try:
            async for event in subscription:
                yield event.to_sse()
        except asyncio.CancelledError:
            pass
        finally:
            event_bus.unsubscribe(subscriber_id)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


class HTTPInputPlugin(InputPlugin):
    """
    Input plugin that provides a REST API for resources and groups.

    Implements the standard InputPlugin interface using FastAPI.
    """

    def __init__(self):
        self.app: Optional[FastAPI] = None
        self.host: str = "0.0.0.0"
        self.port: int = 8000
        self.log_level: str = "info"
        self.server = None
        self._store = None
        self._event_bus: Optional[EventBus] = None

    @property
    def name(self) -> str:
        return "http"

    @property
    def version(self) -> str:
        return "1.0.0"

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load HTTP plugin configuration from environment variables."""
        return {
            "host": os.getenv("API_HOST", "0.0.0.0"),
            "port": int(os.getenv("API_PORT", "8000")),
        }

    async def initialize(self, config: Dict[str, Any]) -> None:
        """Create the FastAPI app and its routes."""
        self.host = config.get("host", "0.0.0.0")
        self.port = config.get("port", 8000)
        self.log_level = str(config.get("log_level", "info")).lower()

        self.app = FastAPI(
            title="Groupwise Operator API",
            description="Resources and resource groups reconciled by the "
            "groupwise controller",
            version="1.0.0",
        )
        self._setup_routes()

        logger.info(f"HTTP input plugin initialized on {self.host}:{self.port}")

    def set_store(self, store) -> None:
        self._store = store

    def set_event_bus(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus

    def _require_store(self):
        if not self._store:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._store

    def _require_event_bus(self) -> EventBus:
        if not self._event_bus:
            raise HTTPException(status_code=503, detail="Event streaming not available")
        return self._event_bus

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes for the REST API.

        - Health check: GET /
        - Resource groups CRUD: /api/v1/groups
        - Resources CRUD: /api/v1/resources
        - Finalizers: PUT /api/v1/resources/{namespace}/{name}/finalizers
        - Reconciliation: POST /api/v1/resources/{namespace}/{name}/reconcile
        - Event streams: /api/v1/events, /api/v1/resources/{namespace}/{name}/events

        Raises:
            RuntimeError: If the FastAPI app has not been initialized
        """
        if not self.app:
            raise RuntimeError("App not initialized")

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "groupwise-operator"}

        # ==================== Resource Group Endpoints ====================

        @self.app.post("/api/v1/groups", response_model=GroupResponse, status_code=201)
        async def create_group(group: GroupCreate):
            """Create a new resource group."""
            store = self._require_store()
            try:
                created = await store.create_group(
                    namespace=group.namespace,
                    name=group.name,
                    spec=group.spec,
                    phase=group.phase,
                )
                return GroupResponse.model_validate(created)
            except asyncpg.UniqueViolationError:
                raise HTTPException(
                    status_code=409,
                    detail=f"Resource group {group.namespace}/{group.name} "
                    f"already exists",
                )
            except Exception as e:
                logger.error(f"Error creating resource group: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/groups", response_model=List[GroupResponse])
        async def list_groups(namespace: Optional[str] = None, limit: int = 100):
            """List resource groups."""
            store = self._require_store()
            try:
                groups = await store.list_groups(namespace=namespace, limit=limit)
                return [GroupResponse.model_validate(g) for g in groups]
            except Exception as e:
                logger.error(f"Error listing resource groups: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/groups/{namespace}/{name}", response_model=GroupResponse
        )
        async def get_group(namespace: str, name: str):
            """Get a resource group."""
            store = self._require_store()
            try:
                group = await store.get_group(NamespacedName(namespace, name))
                return GroupResponse.model_validate(group)
            except RecordNotFoundError:
                raise HTTPException(status_code=404, detail="Resource group not found")
            except Exception as e:
                logger.error(f"Error getting resource group: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put(
            "/api/v1/groups/{namespace}/{name}", response_model=GroupResponse
        )
        async def update_group(namespace: str, name: str, update: GroupUpdate):
            """Update a resource group's spec or phase."""
            store = self._require_store()
            try:
                group: ResourceGroup = await store.update_group(
                    NamespacedName(namespace, name),
                    spec=update.spec,
                    phase=update.phase,
                )
                return GroupResponse.model_validate(group)
            except RecordNotFoundError:
                raise HTTPException(status_code=404, detail="Resource group not found")
            except Exception as e:
                logger.error(f"Error updating resource group: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete("/api/v1/groups/{namespace}/{name}", status_code=204)
        async def delete_group(namespace: str, name: str):
            """Delete a resource group (fails while resources reference it)."""
            store = self._require_store()
            try:
                await store.delete_group(NamespacedName(namespace, name))
                return None
            except RecordNotFoundError:
                raise HTTPException(status_code=404, detail="Resource group not found")
            except ValueError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error deleting resource group: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Resource Endpoints ====================

        @self.app.post(
            "/api/v1/resources", response_model=ResourceResponse, status_code=201
        )
        async def create_resource(resource: ResourceCreate):
            """Create a new resource."""
            store = self._require_store()
            group = (
                resource.group.resolve(resource.namespace) if resource.group else None
            )
            try:
                if group is not None:
                    await store.get_group(group)
                created = await store.create_resource(
                    namespace=resource.namespace,
                    name=resource.name,
                    spec=resource.spec,
                    group=group,
                )
                return ResourceResponse.from_resource(created)
            except RecordNotFoundError:
                raise HTTPException(
                    status_code=400, detail=f"Resource group {group} not found"
                )
            except asyncpg.UniqueViolationError:
                raise HTTPException(
                    status_code=409,
                    detail=f"Resource {resource.namespace}/{resource.name} "
                    f"already exists",
                )
            except Exception as e:
                logger.error(f"Error creating resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get("/api/v1/resources", response_model=List[ResourceResponse])
        async def list_resources(
            namespace: Optional[str] = None,
            group_namespace: Optional[str] = None,
            group_name: Optional[str] = None,
            limit: int = 100,
        ):
            """List resources, optionally filtered by namespace or group."""
            store = self._require_store()
            group = None
            if group_name:
                group = NamespacedName(
                    group_namespace or namespace or DEFAULT_NAMESPACE, group_name
                )
            try:
                resources = await store.list_resources(
                    namespace=namespace, group=group, limit=limit
                )
                return [ResourceResponse.from_resource(r) for r in resources]
            except Exception as e:
                logger.error(f"Error listing resources: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.get(
            "/api/v1/resources/{namespace}/{name}", response_model=ResourceResponse
        )
        async def get_resource(namespace: str, name: str):
            """Get a resource, including one pending deletion."""
            store = self._require_store()
            try:
                resource = await store.get_resource(NamespacedName(namespace, name))
                return ResourceResponse.from_resource(resource)
            except RecordNotFoundError:
                raise HTTPException(status_code=404, detail="Resource not found")
            except Exception as e:
                logger.error(f"Error getting resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.put(
            "/api/v1/resources/{namespace}/{name}", response_model=ResourceResponse
        )
        async def update_resource(namespace: str, name: str, update: ResourceUpdate):
            """Update a resource's spec or group."""
            store = self._require_store()
            group = update.group.resolve(namespace) if update.group else None
            try:
                if group is not None:
                    try:
                        await store.get_group(group)
                    except RecordNotFoundError:
                        raise HTTPException(
                            status_code=400, detail=f"Resource group {group} not found"
                        )
                updated = await store.update_resource(
                    NamespacedName(namespace, name), spec=update.spec, group=group
                )
                return ResourceResponse.from_resource(updated)
            except HTTPException:
                raise
            except RecordNotFoundError as e:
                if e.kind == "ResourceGroup":
                    raise HTTPException(
                        status_code=400, detail=f"Resource group {group} not found"
                    )
                raise HTTPException(status_code=404, detail="Resource not found")
            except ValueError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error updating resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        @self.app.delete("/api/v1/resources/{namespace}/{name}", status_code=202)
        async def delete_resource(namespace: str, name: str):
            """
            Request deletion of a resource.

            Sets the deletion marker; the resource is removed once its
            finalizers are gone.
            """
            store = self._require_store()
            identity = NamespacedName(namespace, name)
            try:
                removed = await store.mark_resource_for_deletion(identity)
            except RecordNotFoundError:
                raise HTTPException(status_code=404, detail="Resource not found")
            except Exception as e:
                logger.error(f"Error deleting resource: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            if removed:
                return {"message": "Resource deleted", "resource": str(identity)}
            return {
                "message": "Resource marked for deletion",
                "resource": str(identity),
            }

        @self.app.put("/api/v1/resources/{namespace}/{name}/finalizers")
        async def update_finalizers(
            namespace: str, name: str, update: FinalizersUpdate
        ):
            """Add or remove finalizers from a resource."""
            store = self._require_store()
            identity = NamespacedName(namespace, name)
            try:
                if update.add:
                    await store.add_finalizers(identity, *update.add)
                if update.remove:
                    await store.remove_finalizers(identity, *update.remove)
            except RecordNotFoundError:
                raise HTTPException(status_code=404, detail="Resource not found")
            except ValueError as e:
                raise HTTPException(status_code=409, detail=str(e))
            except Exception as e:
                logger.error(f"Error updating finalizers: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            try:
                resource = await store.get_resource(identity)
            except RecordNotFoundError:
                return {
                    "message": "All finalizers removed, resource deleted",
                    "resource": str(identity),
                }
            return ResourceResponse.from_resource(resource)

        @self.app.post(
            "/api/v1/resources/{namespace}/{name}/reconcile", status_code=202
        )
        async def trigger_reconciliation(namespace: str, name: str):
            """Ask the controller to reconcile a resource now."""
            store = self._require_store()
            identity = NamespacedName(namespace, name)
            try:
                await store.request_reconcile(identity)
                return {
                    "message": "Reconciliation triggered",
                    "resource": str(identity),
                }
            except RecordNotFoundError:
                raise HTTPException(status_code=404, detail="Resource not found")
            except Exception as e:
                logger.error(f"Error triggering reconciliation: {e}")
                raise HTTPException(status_code=500, detail=str(e))

        # ==================== Event Streams ====================

        @self.app.get("/api/v1/events")
        async def stream_all_events(namespace: Optional[str] = None):
            """SSE stream of diagnostic events, optionally for one namespace."""
            event_bus = self._require_event_bus()

            filter_fn = None
            if namespace:

                def filter_fn(event: DiagnosticEvent) -> bool:
                    return event.namespace == namespace

            return _sse_response(event_bus, filter_fn)

        @self.app.get("/api/v1/resources/{namespace}/{name}/events")
        async def stream_resource_events(namespace: str, name: str):
            """SSE stream of diagnostic events for one resource."""
            store = self._require_store()
            event_bus = self._require_event_bus()

            try:
                await store.get_resource(NamespacedName(namespace, name))
            except RecordNotFoundError:
                raise HTTPException(status_code=404, detail="Resource not found")

            def filter_fn(event: DiagnosticEvent) -> bool:
                return event.namespace == namespace and event.name == name

            return _sse_response(event_bus, filter_fn)

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level,
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting HTTP input plugin on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping HTTP input plugin")
        if self.server:
            self.server.should_exit = True

    async def health_check(self) -> Tuple[bool, str]:
        """Check if the HTTP API is healthy."""
        if self.server and self.server.started:
            return True, "HTTP API is running"
        return False, "HTTP API is not running"
