"""
Output folder resolution.

Each source node owns at most one folder node. The folder id is kept in the
source node's `output_folder_id` meta key and reused for as long as the
folder exists.
"""
from typing import Optional

import structlog

from shared.database import get_db_session
from shared.models import utc_now_iso
from .graph_ops import create_folder_node, link_nodes, require_node, get_node, update_node_metadata
from .schemas import Artifact, FolderNode

logger = structlog.get_logger()

# Horizontal gap between a source node and its folder
FOLDER_OFFSET_X = 160


def derive_folder_position(source_ui: Optional[dict]) -> dict:
    """Place the folder right of the source node, top-aligned."""
    bbox = (source_ui or {}).get("bbox")
    if isinstance(bbox, dict):
        try:
            return {
                "x": round(float(bbox.get("x2", 0)) + FOLDER_OFFSET_X),
                "y": round(float(bbox.get("y1", 0))),
            }
        except (TypeError, ValueError):
            pass
    return {"x": 0, "y": 0}


def _folder_artifacts(meta: Optional[dict]):
    raw = (meta or {}).get("artifacts")
    if not isinstance(raw, list):
        return []
    return [Artifact(**item) for item in raw if isinstance(item, dict) and isinstance(item.get("url"), str)]


async def resolve_output_folder(
    project_id: str,
    source_node_id: str,
    job_id: str,
    *,
    provider: str = "midjourney",
    job_meta_key: str = "midjourney_job_id",
    title_prefix: str = "Midjourney",
) -> FolderNode:
    """
    Return the source node's output folder, creating it on first use.

    Runs in one transaction: two concurrent callers for the same source node
    end up with the same folder.

    Args:
        project_id: Owning project
        source_node_id: Node that triggered the job
        job_id: Job being collected; stamped on the source (and new folder)
        provider: Provider name recorded on the folder
        job_meta_key: Source meta key that stores the job id
        title_prefix: Folder title prefix ("<prefix> <first 8 of job id>")

    Raises:
        NodeNotFoundError: When the source node does not exist
    """
    async with get_db_session() as db:
        source = await require_node(db, project_id, source_node_id, for_update=True)
        source_meta = source.meta or {}

        existing_id = source_meta.get("output_folder_id")
        if isinstance(existing_id, str) and existing_id:
            existing = await get_node(db, project_id, existing_id)
            if existing is not None:
                if source_meta.get(job_meta_key) != job_id:
                    update_node_metadata(source, {job_meta_key: job_id})
                logger.debug(
                    "output_folder_reused",
                    project_id=project_id,
                    source_node_id=source_node_id,
                    folder_node_id=existing.node_id,
                )
                return FolderNode(
                    node_id=existing.node_id,
                    source_node_id=source_node_id,
                    title=existing.title or "",
                    artifacts=_folder_artifacts(existing.meta),
                    created=False,
                )
            logger.info(
                "output_folder_missing",
                project_id=project_id,
                source_node_id=source_node_id,
                folder_node_id=existing_id,
            )

        folder = await create_folder_node(
            db,
            project_id,
            title=f"{title_prefix} {job_id[:8]}",
            meta={
                "artifacts": [],
                "provider": provider,
                "source_job_id": job_id,
                "source_node_id": source_node_id,
                "display_mode": "grid",
                "created_at": utc_now_iso(),
            },
            position=derive_folder_position(source.ui),
        )
        await link_nodes(db, project_id, source_node_id, folder.node_id)
        update_node_metadata(source, {"output_folder_id": folder.node_id, job_meta_key: job_id})

        logger.info(
            "output_folder_created",
            project_id=project_id,
            source_node_id=source_node_id,
            folder_node_id=folder.node_id,
            job_id=job_id,
        )
        return FolderNode(
            node_id=folder.node_id,
            source_node_id=source_node_id,
            title=folder.title,
            artifacts=[],
            created=True,
        )
