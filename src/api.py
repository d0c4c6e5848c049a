"""
Platform API - REST interface over the object store.

Exposes the API type directory, CRUD on objects of any served kind and a
Server-Sent Events watch stream. Resources are addressed kubectl-style
(``promises``, ``works.platform.kratix.io``, ``redis.redis.opstreelabs.in``).
The kratixctl CLI and the pipeline stages talk to the platform through it.
"""

import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from errors import (
    AlreadyExistsError,
    ConflictError,
    InvalidObjectError,
    NotFoundError,
)
from events import EventBus, ObjectEvent
from models import BUILTIN_TYPES, APITypeDefinition, GroupVersionKind
from pipeline import parse_labels

logger = logging.getLogger(__name__)

# DNS subdomain names, as used for object names
NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")
MAX_NAME_LENGTH = 253
DEFAULT_NAMESPACE = "default"


def validate_name_format(value: str, field_name: str) -> str:
    """Validate that a name follows Kubernetes naming conventions."""
    if not value:
        raise ValueError(f"{field_name} cannot be empty")
    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(f"{field_name} cannot exceed {MAX_NAME_LENGTH} characters")
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{field_name} must consist of lowercase alphanumeric characters, '-' "
            f"or '.', and must start and end with an alphanumeric character"
        )
    return value


class ObjectMetadata(BaseModel):
    """Client-supplied object metadata."""

    model_config = ConfigDict(extra="allow")

    name: str = Field(..., description="Object name", examples=["my-redis"])
    namespace: Optional[str] = Field(None, description="Namespace of the object")
    labels: Optional[Dict[str, str]] = None
    annotations: Optional[Dict[str, str]] = None
    finalizers: Optional[List[str]] = None
    resourceVersion: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return validate_name_format(v, "metadata.name")


class ObjectBody(BaseModel):
    """A Kubernetes-style object; everything besides the header is free-form."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    api_version: str = Field(..., alias="apiVersion", examples=["platform.kratix.io/v1alpha1"])
    kind: str = Field(..., examples=["Promise"])
    metadata: ObjectMetadata

    def to_object(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class APITypeResponse(BaseModel):
    """Response model for a served API type."""

    name: str
    group: str
    version: str
    kind: str
    apiVersion: str
    plural: str
    scope: str

    @classmethod
    def from_definition(cls, definition: APITypeDefinition) -> "APITypeResponse":
        return cls(
            name=definition.name,
            group=definition.group,
            version=definition.version,
            kind=definition.kind,
            apiVersion=definition.gvk.api_version,
            plural=definition.plural,
            scope=definition.scope,
        )


def raise_for_store_error(e: Exception, action: str) -> None:
    """Translate a store error into the matching HTTP error."""
    if isinstance(e, HTTPException):
        raise e
    if isinstance(e, NotFoundError):
        raise HTTPException(status_code=404, detail=e.message)
    if isinstance(e, (AlreadyExistsError, ConflictError)):
        raise HTTPException(status_code=409, detail=e.message)
    if isinstance(e, InvalidObjectError):
        raise HTTPException(status_code=422, detail=e.message)
    logger.error(f"Error {action}: {e}")
    raise HTTPException(status_code=500, detail=str(e))


class PlatformAPI:
    """FastAPI application serving the object store."""

    def __init__(
        self,
        store,
        event_bus: Optional[EventBus] = None,
        host: str = "0.0.0.0",
        port: int = 8000,
    ):
        self.store = store
        self.event_bus = event_bus
        self.host = host
        self.port = port
        self.server: Optional[uvicorn.Server] = None
        self.app = FastAPI(
            title="Kratix Platform API",
            description="Promises, resource requests and Works",
            version="1.0.0",
        )
        self._setup_routes()

    async def _lookup_type(self, kind: GroupVersionKind) -> APITypeDefinition:
        for builtin in BUILTIN_TYPES:
            if builtin.gvk == kind:
                return builtin
        definition = await self.store.get_api_type(kind)
        if definition is None:
            raise HTTPException(
                status_code=404,
                detail=f"The server doesn't have a resource type for {kind}",
            )
        return definition

    async def _resolve(self, resource: str) -> APITypeDefinition:
        definition = await self.store.find_api_type(resource)
        if definition is None:
            raise HTTPException(
                status_code=404,
                detail=f'The server doesn\'t have a resource type "{resource}"',
            )
        return definition

    async def _prepare(self, body: ObjectBody) -> Dict[str, Any]:
        """Apply scope defaults to a submitted object."""
        obj = body.to_object()
        definition = await self._lookup_type(GroupVersionKind.of(obj))
        metadata = obj["metadata"]
        if definition.scope == "Cluster":
            metadata.pop("namespace", None)
        elif not metadata.get("namespace"):
            metadata["namespace"] = DEFAULT_NAMESPACE
        return obj

    @staticmethod
    def _namespace_for(definition: APITypeDefinition, namespace: Optional[str]) -> str:
        if definition.scope == "Cluster":
            return ""
        return namespace or DEFAULT_NAMESPACE

    def _setup_routes(self) -> None:
        """
        Set up all FastAPI routes.

        - Health check: GET /
        - API types: /api/v1/types
        - Object writes: /api/v1/objects
        - Object reads and deletes: /api/v1/resources/{resource}
        - Watch: GET /api/v1/watch
        """

        @self.app.get("/")
        async def health_check():
            """Health check endpoint."""
            return {"status": "ok", "service": "kratix-platform"}

        # ==================== API Type Endpoints ====================

        @self.app.get("/api/v1/types", response_model=List[APITypeResponse])
        async def list_api_types():
            """List served API types."""
            try:
                definitions = await self.store.list_api_types()
            except Exception as e:
                raise_for_store_error(e, "listing API types")
            return [APITypeResponse.from_definition(d) for d in definitions]

        @self.app.get("/api/v1/types/{resource}", response_model=APITypeResponse)
        async def resolve_api_type(resource: str):
            """Resolve a resource name to its API type."""
            try:
                definition = await self._resolve(resource)
            except Exception as e:
                raise_for_store_error(e, "resolving API type")
            return APITypeResponse.from_definition(definition)

        # ==================== Object Endpoints ====================

        @self.app.post("/api/v1/objects", status_code=201)
        async def create_object(body: ObjectBody):
            """Create an object of any served kind."""
            try:
                obj = await self._prepare(body)
                return await self.store.create(obj)
            except Exception as e:
                raise_for_store_error(e, "creating object")

        @self.app.put("/api/v1/objects")
        async def update_object(body: ObjectBody):
            """Replace an object; metadata.resourceVersion must be current."""
            try:
                obj = await self._prepare(body)
                return await self.store.update(obj)
            except Exception as e:
                raise_for_store_error(e, "updating object")

        @self.app.get("/api/v1/resources/{resource}")
        async def list_objects(
            resource: str,
            namespace: Optional[str] = None,
            labelSelector: Optional[str] = None,
        ):
            """List objects, optionally filtered by namespace and labels."""
            try:
                selector = parse_labels(labelSelector) if labelSelector else None
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

            try:
                definition = await self._resolve(resource)
                if definition.scope == "Cluster":
                    namespace = None
                items = await self.store.list(
                    definition.gvk, namespace=namespace, label_selector=selector
                )
            except Exception as e:
                raise_for_store_error(e, "listing objects")
            return {"apiVersion": definition.gvk.api_version, "kind": "List", "items": items}

        @self.app.get("/api/v1/resources/{resource}/{name}")
        async def get_object(resource: str, name: str, namespace: Optional[str] = None):
            """Get an object by name."""
            try:
                definition = await self._resolve(resource)
                return await self.store.get(
                    definition.gvk, self._namespace_for(definition, namespace), name
                )
            except Exception as e:
                raise_for_store_error(e, "getting object")

        @self.app.delete("/api/v1/resources/{resource}/{name}")
        async def delete_object(resource: str, name: str, namespace: Optional[str] = None):
            """
            Delete an object.

            Objects holding finalizers are marked for deletion and returned;
            the rest are removed immediately.
            """
            try:
                definition = await self._resolve(resource)
                marked = await self.store.delete(
                    definition.gvk, self._namespace_for(definition, namespace), name
                )
            except Exception as e:
                raise_for_store_error(e, "deleting object")
            if marked is not None:
                return marked
            return {"status": "deleted", "kind": definition.kind, "name": name}

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/watch")
        async def watch(resource: Optional[str] = None, namespace: Optional[str] = None):
            """SSE stream of object events, optionally for one resource type."""
            if not self.event_bus:
                raise HTTPException(
                    status_code=503,
                    detail="Event streaming not available",
                )

            kind: Optional[GroupVersionKind] = None
            if resource:
                try:
                    kind = (await self._resolve(resource)).gvk
                except Exception as e:
                    raise_for_store_error(e, "resolving API type")

            def filter_fn(event: ObjectEvent) -> bool:
                if kind is not None and (
                    event.api_version != kind.api_version or event.kind != kind.kind
                ):
                    return False
                return namespace is None or event.namespace == namespace

            subscriber_id, subscription = await self.event_bus.subscribe(filter_fn)

            async def event_generator():
                try:
                    async for event in subscription:
                        yield event.to_sse()
                except asyncio.CancelledError:
                    pass
                finally:
                    await self.event_bus.unsubscribe(subscriber_id)

            return StreamingResponse(
                event_generator(),
                media_type="text/event-stream",
                headers={
                    "Cache-Control": "no-cache",
                    "X-Accel-Buffering": "no",
                },
            )

    async def start(self) -> None:
        """Start the HTTP server."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        self.server = uvicorn.Server(config)

        logger.info(f"Starting platform API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        logger.info("Stopping platform API")
        if self.server:
            self.server.should_exit = True
