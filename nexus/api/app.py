"""FastAPI application: SSE turn endpoint plus the thin CRUD surface."""

from __future__ import annotations

from contextlib import aclosing, asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from nexus import __version__
from nexus.api.schemas import (
    EdgeOut,
    GraphViewOut,
    InjectedContextOut,
    NodeDetailOut,
    NodeOut,
    NodeUpdateBody,
    ProjectCreateBody,
    ProjectListOut,
    ProjectOut,
    StatusOut,
    TurnOut,
    TurnRequestBody,
    TurnUpdateBody,
)
from nexus.config.schema import Config
from nexus.db import repository
from nexus.db.models import Turn, utcnow
from nexus.errors import BadRequestError, NexusError, NotFoundError
from nexus.logging import get_logger
from nexus.services import Services
from nexus.turn.orchestrator import TurnRequest

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.post("/chat/turn")
async def chat_turn(
    body: TurnRequestBody,
    request: Request,
    services: Services = Depends(get_services),
) -> EventSourceResponse:
    """Run one turn and stream it back.

    Events:
        token:    {text}
        complete: {turnId, nodeId}
        error:    {code, message[, retryable]}
    """
    turn_request = TurnRequest(
        project_id=str(body.project_id),
        provider=body.provider.value,
        model=body.model,
        user_text=body.user_text,
    )

    async def event_stream() -> AsyncIterator[dict[str, str]]:
        events = services.orchestrator.run(turn_request, is_disconnected=request.is_disconnected)
        async with aclosing(events) as stream:
            async for event in stream:
                yield event.to_sse()

    return EventSourceResponse(event_stream())


@router.get("/chat/turn/{turn_id}/injected", response_model=InjectedContextOut)
async def get_injected_context(turn_id: str, services: Services = Depends(get_services)) -> InjectedContextOut:
    async with services.database.session() as session:
        turn = await repository.get_owned_turn(session, turn_id, services.config.dev_user_id)
        if turn is None:
            raise NotFoundError("Turn not found")
        return InjectedContextOut.of(turn)


@router.patch("/chat/turn/{turn_id}", response_model=TurnOut)
async def update_turn(
    turn_id: str,
    body: TurnUpdateBody,
    services: Services = Depends(get_services),
) -> TurnOut:
    async with services.database.transaction() as session:
        turn = await repository.get_owned_turn(session, turn_id, services.config.dev_user_id)
        if turn is None:
            raise NotFoundError("Turn not found")
        if body.user_text is not None:
            turn.user_text = body.user_text
        if body.assistant_text is not None:
            turn.assistant_text = body.assistant_text
    logger.info("turn_edited", turn_id=turn.id)
    return TurnOut.model_validate(turn)


@router.post("/projects", response_model=ProjectOut, status_code=201)
async def create_project(body: ProjectCreateBody, services: Services = Depends(get_services)) -> ProjectOut:
    async with services.database.transaction() as session:
        project = await repository.create_project(session, services.config.dev_user_id, body.name)
    logger.info("project_created", project_id=project.id)
    return ProjectOut.of(project)


@router.get("/projects", response_model=ProjectListOut)
async def list_projects(services: Services = Depends(get_services)) -> ProjectListOut:
    async with services.database.session() as session:
        projects = await repository.list_projects(session, services.config.dev_user_id)
    return ProjectListOut(projects=[ProjectOut.of(p) for p in projects])


@router.get("/graph/view", response_model=GraphViewOut)
async def graph_view(
    project_id: str = Query(alias="projectId", min_length=1),
    limit: int = Query(default=100, ge=1, le=500),
    include_deleted: bool = Query(default=False, alias="includeDeleted"),
    services: Services = Depends(get_services),
) -> GraphViewOut:
    async with services.database.session() as session:
        project = await repository.get_owned_project(session, project_id, services.config.dev_user_id)
        if project is None:
            raise NotFoundError("Project not found")
        nodes, edges = await repository.graph_view(
            session, project_id, limit=limit, include_deleted=include_deleted
        )
    return GraphViewOut(
        project_id=project_id,
        nodes=[NodeOut.of(n) for n in nodes],
        edges=[EdgeOut.of(e) for e in edges],
    )


@router.get("/graph/node/{node_id}", response_model=NodeDetailOut)
async def get_node(node_id: str, services: Services = Depends(get_services)) -> NodeDetailOut:
    async with services.database.session() as session:
        node = await repository.get_owned_node(session, node_id, services.config.dev_user_id)
        if node is None:
            raise NotFoundError("Node not found")
        turn = await session.get(Turn, node.turn_id)
        if turn is None:
            raise NotFoundError("Node not found")
        return NodeDetailOut(node=NodeOut.of(node), turn=TurnOut.model_validate(turn))


@router.patch("/graph/node/{node_id}", response_model=NodeOut)
async def update_node(
    node_id: str,
    body: NodeUpdateBody,
    services: Services = Depends(get_services),
) -> NodeOut:
    async with services.database.transaction() as session:
        node = await repository.get_owned_node(session, node_id, services.config.dev_user_id)
        if node is None:
            raise NotFoundError("Node not found")
        if body.title is not None:
            node.title = body.title or None
            node.user_edited = True
        if body.summary is not None:
            node.summary = body.summary
            node.user_edited = True
        if body.pinned is not None:
            node.pinned = body.pinned
        node.updated_at = utcnow()
    return NodeOut.of(node)


@router.delete("/graph/node/{node_id}", response_model=NodeOut)
async def delete_node(node_id: str, services: Services = Depends(get_services)) -> NodeOut:
    """Soft delete: the node drops out of chain building and pinned context."""
    async with services.database.transaction() as session:
        node = await repository.get_owned_node(session, node_id, services.config.dev_user_id)
        if node is None:
            raise NotFoundError("Node not found")
        now = utcnow()
        if node.deleted_at is None:
            node.deleted_at = now
        node.updated_at = now
    return NodeOut.of(node)


@router.post("/graph/node/{node_id}/restore", response_model=NodeOut)
async def restore_node(node_id: str, services: Services = Depends(get_services)) -> NodeOut:
    async with services.database.transaction() as session:
        node = await repository.get_owned_node(session, node_id, services.config.dev_user_id)
        if node is None:
            raise NotFoundError("Node not found")
        node.deleted_at = None
        node.updated_at = utcnow()
    return NodeOut.of(node)


@router.get("/ready", response_model=StatusOut)
async def ready(services: Services = Depends(get_services)) -> Any:
    if await services.database.ping():
        return StatusOut(status="ok")
    return JSONResponse(status_code=503, content={"status": "unavailable"})


async def _nexus_error_handler(_request: Request, exc: NexusError) -> JSONResponse:
    return JSONResponse(status_code=exc.status, content=exc.to_wire())


async def _validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = errors[0].get("msg") if errors else None
    logger.info("request_rejected", errors=len(errors), detail=detail)
    error = BadRequestError("Invalid request body")
    return JSONResponse(status_code=error.status, content=error.to_wire())


def create_app(config: Config | None = None, *, services: Services | None = None) -> FastAPI:
    """Build the application.

    When *services* is supplied it is used as-is: its schema is created on
    startup and its connection pool is released on shutdown, but its clients
    stay open. Otherwise services are built from *config* and fully closed
    on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services is not None:
            await services.database.create_all()
            app.state.services = services
            try:
                yield
            finally:
                await services.database.dispose()
            return
        built = Services.build(config or Config())
        await built.database.create_all()
        app.state.services = built
        logger.info("server_starting", version=__version__)
        try:
            yield
        finally:
            await built.aclose()
            logger.info("server_stopped")

    app = FastAPI(title="Nexus", version=__version__, lifespan=lifespan)
    app.add_exception_handler(NexusError, _nexus_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)
    if services is not None:
        app.state.services = services
    return app
