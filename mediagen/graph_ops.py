"""
Graph operations on the workflow store.

Every function takes the caller's session so several reads and writes can
share one transaction (see shared.database.get_db_session). Nothing here
commits.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import attributes

from shared.database import is_sqlite
from shared.errors import NodeNotFoundError
from shared.models import Asset, Edge, Node, NodeType, utc_now

logger = structlog.get_logger()

# Default footprint of nodes created by the pipeline
FOLDER_WIDTH = 360
FOLDER_HEIGHT = 280


def _lock(query):
    """Row lock on servers that support it; SQLite already holds the write lock."""
    if is_sqlite():
        return query
    return query.with_for_update()


async def get_node(
    db: AsyncSession,
    project_id: str,
    node_id: str,
    for_update: bool = False,
) -> Optional[Node]:
    query = select(Node).where(Node.project_id == project_id, Node.node_id == node_id)
    if for_update:
        query = _lock(query)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def require_node(
    db: AsyncSession,
    project_id: str,
    node_id: str,
    for_update: bool = False,
) -> Node:
    """Like get_node, but raises NodeNotFoundError when the node is gone."""
    node = await get_node(db, project_id, node_id, for_update=for_update)
    if node is None:
        raise NodeNotFoundError(project_id, node_id)
    return node


async def get_upstream_nodes(db: AsyncSession, project_id: str, node_id: str) -> List[Node]:
    """Nodes with an edge into `node_id`, oldest edge first."""
    result = await db.execute(
        select(Node)
        .join(
            Edge,
            (Edge.project_id == Node.project_id) & (Edge.from_node == Node.node_id),
        )
        .where(Edge.project_id == project_id, Edge.to_node == node_id)
        .order_by(Edge.created_at, Edge.from_node)
    )
    return list(result.scalars().all())


async def create_node(
    db: AsyncSession,
    project_id: str,
    node_type: str,
    title: str,
    content: str = "",
    meta: Optional[Dict[str, Any]] = None,
    position: Optional[Dict[str, float]] = None,
    width: int = FOLDER_WIDTH,
    height: int = FOLDER_HEIGHT,
) -> Node:
    """Insert a node; `position` is its top-left corner."""
    x = round((position or {}).get("x", 0))
    y = round((position or {}).get("y", 0))
    node = Node(
        project_id=project_id,
        node_id=f"{node_type}_{uuid.uuid4().hex[:12]}",
        type=node_type,
        title=title,
        content=content,
        meta=dict(meta or {}),
        ui={"bbox": {"x1": x, "y1": y, "x2": x + width, "y2": y + height}},
    )
    db.add(node)
    await db.flush()
    logger.info("node_created", project_id=project_id, node_id=node.node_id, type=node_type)
    return node


async def create_folder_node(
    db: AsyncSession,
    project_id: str,
    title: str,
    meta: Dict[str, Any],
    position: Optional[Dict[str, float]] = None,
) -> Node:
    return await create_node(
        db,
        project_id,
        NodeType.FOLDER.value,
        title,
        meta=meta,
        position=position,
    )


async def link_nodes(
    db: AsyncSession,
    project_id: str,
    from_node: str,
    to_node: str,
    label: Optional[str] = None,
) -> Edge:
    """Create the edge unless it already exists."""
    existing = await db.get(Edge, (project_id, from_node, to_node))
    if existing is not None:
        return existing

    edge = Edge(project_id=project_id, from_node=from_node, to_node=to_node, label=label)
    db.add(edge)
    await db.flush()
    logger.debug("nodes_linked", project_id=project_id, from_node=from_node, to_node=to_node)
    return edge


def update_node_metadata(node: Node, updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge `updates` into node.meta.

    Must run on a node loaded in the current transaction.
    """
    meta = dict(node.meta or {})
    meta.update(updates)

    node.meta = meta
    node.updated_at = utc_now()
    attributes.flag_modified(node, "meta")
    return meta


async def register_asset(
    db: AsyncSession,
    project_id: str,
    node_id: str,
    path: str,
    meta: Dict[str, Any],
) -> Asset:
    """Record a stored file against the node that owns it."""
    asset = Asset(project_id=project_id, node_id=node_id, path=path, asset_meta=dict(meta))
    db.add(asset)
    await db.flush()
    return asset
