"""Graph linker: one node per turn, chained by ``follows`` edges."""

from __future__ import annotations

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from nexus.db import repository
from nexus.db.engine import Database
from nexus.db.models import EDGE_FOLLOWS, GraphEdge, GraphNode, Turn, utcnow
from nexus.errors import PersistenceError
from nexus.graph.locks import ProjectLockRegistry
from nexus.logging import get_logger

logger = get_logger(__name__)


class GraphLinker:
    """
    Creates graph nodes atomically with their predecessor edge.

    Writes for one project are serialized twice over: an in-process lock per
    project, and a locking read of the project row inside the transaction
    (effective on databases with row locks). Under that serialization the
    live nodes of a project always form a single chain in creation order.
    """

    def __init__(self, database: Database, locks: ProjectLockRegistry | None = None) -> None:
        self.database = database
        self.locks = locks or ProjectLockRegistry()

    async def _link_in(
        self,
        session: AsyncSession,
        *,
        project_id: str,
        turn_id: str,
        title: str | None,
        summary: str,
    ) -> GraphNode:
        await repository.lock_project(session, project_id)
        previous = await repository.latest_live_node(session, project_id)
        position = await repository.next_node_position(session, project_id)

        now = utcnow()
        if previous is not None and previous.created_at > now:
            now = previous.created_at

        node = GraphNode(
            project_id=project_id,
            turn_id=turn_id,
            position=position,
            title=title,
            summary=summary,
            created_at=now,
            updated_at=now,
        )
        session.add(node)
        await session.flush()

        if previous is not None:
            session.add(
                GraphEdge(
                    project_id=project_id,
                    src_node_id=previous.id,
                    dst_node_id=node.id,
                    rel_type=EDGE_FOLLOWS,
                    weight=1.0,
                )
            )
            await session.flush()

        logger.debug(
            "graph_node_linked",
            node_id=node.id,
            previous_node_id=previous.id if previous is not None else None,
        )
        return node

    async def link_turn(self, project_id: str, turn_id: str, title: str | None, summary: str) -> GraphNode:
        """Create the node for an already-stored turn, plus its follows edge."""

        async def _work() -> GraphNode:
            try:
                async with self.database.transaction() as session:
                    return await self._link_in(
                        session, project_id=project_id, turn_id=turn_id, title=title, summary=summary
                    )
            except SQLAlchemyError as e:
                raise PersistenceError("Failed to link turn into graph") from e

        return await self.locks.run_exclusive(project_id, _work)

    async def record_turn(self, turn: Turn, *, title: str | None, summary: str) -> GraphNode:
        """Insert *turn* and link it, all in one transaction.

        Either the turn, its node and its edge are all committed, or nothing is.
        """

        async def _work() -> GraphNode:
            try:
                async with self.database.transaction() as session:
                    session.add(turn)
                    await session.flush()
                    return await self._link_in(
                        session, project_id=turn.project_id, turn_id=turn.id, title=title, summary=summary
                    )
            except SQLAlchemyError as e:
                raise PersistenceError("Failed to persist turn") from e

        return await self.locks.run_exclusive(turn.project_id, _work)
