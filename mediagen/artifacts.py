"""
Artifact persistence.

persist_artifacts stores new job outputs in project storage and records them
on the folder node (and mirrors the list onto the source node).

Order of work:
1. Snapshot the URLs the folder already knows
2. Store new artifacts: http(s) URLs are downloaded, base64/data: payloads
   decoded, anything else kept as a bare record. No transaction is open.
3. One transaction: re-read both nodes, drop anything another writer added
   meanwhile, register assets, append, write both nodes' meta.

A failed download is a warning; the remaining artifacts still persist.
"""
import hashlib
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from shared.database import get_db_session
from shared.models import utc_now_iso
from shared.storage import (
    StoredFile,
    download_remote_asset,
    parse_data_url,
    public_url,
    save_base64_asset,
)
from .graph_ops import register_asset, require_node, update_node_metadata
from .schemas import Artifact, PersistResult

logger = structlog.get_logger()

INLINE_PREFIX = "inline:"


def artifact_identity(artifact: Artifact) -> Optional[Artifact]:
    """
    Normalize an artifact so `url` is a usable identity.

    data: URLs and bare base64 payloads move into `base64_data` and get
    "inline:<sha256 of payload>" as their url. Returns None when there is
    nothing to identify the artifact by.
    """
    if artifact.url.startswith("data:"):
        mime_type, payload = parse_data_url(artifact.url)
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return artifact.model_copy(update={
            "url": f"{INLINE_PREFIX}{digest}",
            "base64_data": artifact.url,
            "mime_type": artifact.mime_type or mime_type,
        })

    if artifact.url:
        return artifact

    if artifact.base64_data:
        _, payload = parse_data_url(artifact.base64_data)
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return artifact.model_copy(update={"url": f"{INLINE_PREFIX}{digest}"})

    return None


def _artifact_records(meta: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Stored artifact records; entries without a string url are dropped."""
    raw = (meta or {}).get("artifacts")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, dict) and isinstance(item.get("url"), str) and item["url"]]


def _known_urls(meta: Optional[Dict[str, Any]]) -> set:
    return {item["url"] for item in _artifact_records(meta)}


def _is_remote(url: str) -> bool:
    return url.startswith(("http://", "https://"))


async def _store_artifact(
    project_id: str,
    artifact: Artifact,
    subdir: str,
    client: Optional[httpx.AsyncClient],
) -> Optional[StoredFile]:
    if artifact.base64_data:
        return await save_base64_asset(
            project_id,
            artifact.base64_data,
            subdir=subdir,
            mime_type=artifact.mime_type,
        )
    if _is_remote(artifact.url):
        return await download_remote_asset(project_id, artifact.url, subdir=subdir, client=client)
    return None


async def persist_artifacts(
    project_id: str,
    source_node_id: str,
    folder_node_id: str,
    job_id: str,
    artifacts: List[Artifact],
    *,
    provider: str = "midjourney",
    client: Optional[httpx.AsyncClient] = None,
    source_meta_updates: Optional[Dict[str, Any]] = None,
) -> PersistResult:
    """
    Store artifacts and append them to the folder node.

    Idempotent per URL: calling again with the same artifacts adds nothing,
    creates no asset rows and writes no new files.

    Args:
        project_id: Owning project
        source_node_id: Node that produced the job; receives an artifacts mirror
        folder_node_id: Folder node that collects the artifacts
        job_id: Job the artifacts belong to
        artifacts: Artifacts reported by the provider
        provider: Storage subdirectory and asset meta tag
        client: Optional httpx client for downloads
        source_meta_updates: Extra keys written to the source node's meta in
            the same transaction (status, progress, ...)

    Raises:
        NodeNotFoundError: When the folder or source node does not exist
    """
    # 1. Snapshot
    async with get_db_session() as db:
        folder = await require_node(db, project_id, folder_node_id)
        known = _known_urls(folder.meta)

    # 2. Filter and store, outside the write transaction
    pending: List[Artifact] = []
    seen = set(known)
    skipped_existing = 0
    for candidate in artifacts:
        artifact = artifact_identity(candidate)
        if artifact is None:
            logger.warning("artifact_without_identity", job_id=job_id)
            continue
        if artifact.url in seen:
            skipped_existing += 1
            continue
        seen.add(artifact.url)
        pending.append(artifact)

    subdir = f"{provider}/{folder_node_id}/job_{job_id}"
    stored: List[Tuple[Artifact, Optional[StoredFile]]] = []
    failed_urls: List[str] = []
    for artifact in pending:
        try:
            stored_file = await _store_artifact(project_id, artifact, subdir, client)
        except (httpx.HTTPError, OSError, ValueError) as e:
            logger.warning(
                "artifact_store_failed",
                project_id=project_id,
                folder_node_id=folder_node_id,
                job_id=job_id,
                url=artifact.url[:200],
                error=str(e),
            )
            failed_urls.append(artifact.url)
            continue
        stored.append((artifact, stored_file))

    # 3. Merge under the write lock
    now = utc_now_iso()
    added: List[Artifact] = []
    async with get_db_session() as db:
        folder = await require_node(db, project_id, folder_node_id, for_update=True)
        source = await require_node(db, project_id, source_node_id, for_update=True)

        merged = _artifact_records(folder.meta)
        merged_urls = _known_urls(folder.meta)

        for artifact, stored_file in stored:
            if artifact.url in merged_urls:
                # Another writer got here first
                skipped_existing += 1
                continue

            record = artifact.model_copy(update={"job_id": job_id, "created_at": now})
            if stored_file is not None:
                asset = await register_asset(
                    db,
                    project_id,
                    folder_node_id,
                    stored_file.relative_path,
                    {
                        "mime_type": stored_file.mime_type,
                        "size": stored_file.size,
                        "job_id": job_id,
                        "source_url": artifact.url,
                        "filename": stored_file.filename,
                        "provider": provider,
                    },
                )
                record = record.model_copy(update={
                    "filename": stored_file.filename,
                    "mime_type": stored_file.mime_type,
                    "size": stored_file.size,
                    "asset_id": asset.asset_id,
                    "storage_path": stored_file.relative_path,
                    "local_url": public_url(project_id, stored_file.relative_path),
                })

            merged.append(record.to_meta())
            merged_urls.add(record.url)
            added.append(record)

        update_node_metadata(folder, {"artifacts": merged, "updated_at": now})

        source_updates: Dict[str, Any] = {"artifacts": merged, "last_generated_at": now}
        source_updates.update(source_meta_updates or {})
        update_node_metadata(source, source_updates)

    logger.info(
        "artifacts_persisted",
        project_id=project_id,
        folder_node_id=folder_node_id,
        job_id=job_id,
        added=len(added),
        skipped_existing=skipped_existing,
        failed=len(failed_urls),
        total=len(merged),
    )

    return PersistResult(
        folder_node_id=folder_node_id,
        artifacts=[Artifact(**item) for item in merged],
        added=added,
        skipped_existing=skipped_existing,
        failed_urls=failed_urls,
    )
