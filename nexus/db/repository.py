"""Query helpers shared by the turn pipeline and the CRUD endpoints."""

from __future__ import annotations

from sqlalchemy import and_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from nexus.db.models import EDGE_FOLLOWS, GraphEdge, GraphNode, MemorySession, Project, Turn, utcnow


async def get_owned_project(session: AsyncSession, project_id: str, user_id: str) -> Project | None:
    result = await session.execute(
        select(Project).where(Project.id == project_id, Project.user_id == user_id).limit(1)
    )
    return result.scalar_one_or_none()


async def lock_project(session: AsyncSession, project_id: str) -> Project | None:
    """Read the project row with a row lock held until the transaction ends.

    ``FOR UPDATE`` is dropped by dialects without row locks (SQLite).
    """
    result = await session.execute(select(Project).where(Project.id == project_id).with_for_update())
    return result.scalar_one_or_none()


async def upsert_memory_session(session: AsyncSession, project_id: str, user_id: str, session_id: str) -> None:
    """Insert or refresh the project's memory addressing; safe under concurrent writers."""
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        insert_fn = pg_insert
    elif dialect == "sqlite":
        insert_fn = sqlite_insert
    else:
        raise NotImplementedError(f"upsert not supported for dialect {dialect!r}")

    now = utcnow()
    stmt = insert_fn(MemorySession).values(
        project_id=project_id,
        user_id=user_id,
        session_id=session_id,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[MemorySession.project_id],
        set_={"user_id": user_id, "session_id": session_id, "updated_at": now},
    )
    await session.execute(stmt)


async def list_pinned_summaries(session: AsyncSession, project_id: str) -> list[str]:
    """Summaries of pinned, live nodes, most recently updated first."""
    result = await session.execute(
        select(GraphNode.summary)
        .where(
            GraphNode.project_id == project_id,
            GraphNode.pinned.is_(True),
            GraphNode.deleted_at.is_(None),
        )
        .order_by(GraphNode.updated_at.desc(), GraphNode.position.desc())
    )
    return list(result.scalars())


async def latest_live_node(session: AsyncSession, project_id: str) -> GraphNode | None:
    result = await session.execute(
        select(GraphNode)
        .where(GraphNode.project_id == project_id, GraphNode.deleted_at.is_(None))
        .order_by(GraphNode.created_at.desc(), GraphNode.position.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def next_node_position(session: AsyncSession, project_id: str) -> int:
    result = await session.execute(
        select(GraphNode.position)
        .where(GraphNode.project_id == project_id)
        .order_by(GraphNode.position.desc())
        .limit(1)
    )
    last = result.scalar_one_or_none()
    return 0 if last is None else last + 1


async def create_project(session: AsyncSession, user_id: str, name: str) -> Project:
    project = Project(user_id=user_id, name=name)
    session.add(project)
    await session.flush()
    return project


async def list_projects(session: AsyncSession, user_id: str) -> list[Project]:
    result = await session.execute(
        select(Project).where(Project.user_id == user_id).order_by(Project.created_at.desc())
    )
    return list(result.scalars())


async def get_owned_turn(session: AsyncSession, turn_id: str, user_id: str) -> Turn | None:
    result = await session.execute(
        select(Turn)
        .join(Project, Project.id == Turn.project_id)
        .where(Turn.id == turn_id, Project.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_owned_node(session: AsyncSession, node_id: str, user_id: str) -> GraphNode | None:
    result = await session.execute(
        select(GraphNode)
        .join(Project, Project.id == GraphNode.project_id)
        .where(GraphNode.id == node_id, Project.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def graph_view(
    session: AsyncSession,
    project_id: str,
    *,
    limit: int = 100,
    include_deleted: bool = False,
) -> tuple[list[GraphNode], list[GraphEdge]]:
    """The most recent *limit* nodes (newest first) and the follows edges among them."""
    stmt = select(GraphNode).where(GraphNode.project_id == project_id)
    if not include_deleted:
        stmt = stmt.where(GraphNode.deleted_at.is_(None))
    stmt = stmt.order_by(GraphNode.created_at.desc(), GraphNode.position.desc()).limit(limit)
    nodes = list((await session.execute(stmt)).scalars())

    ids = [n.id for n in nodes]
    if not ids:
        return nodes, []
    edges = await session.execute(
        select(GraphEdge).where(
            and_(
                GraphEdge.project_id == project_id,
                GraphEdge.rel_type == EDGE_FOLLOWS,
                GraphEdge.src_node_id.in_(ids),
                GraphEdge.dst_node_id.in_(ids),
            )
        )
    )
    return nodes, list(edges.scalars())
