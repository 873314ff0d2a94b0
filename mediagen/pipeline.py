"""
Generation pipeline node functions.

Relay (asynchronous jobs):
- compile_relay_prompt: build the prompt for a node, no network
- queue_relay_generation: compile + submit, prepare the output folder
- collect_relay_results: one poll; persist whatever artifacts came back
- request_relay_upscale: upscale one variant of a finished grid

Multimodal (synchronous):
- run_multimodal_generation: build prompt, generate, persist inline outputs

The caller owns the polling loop: call collect_relay_results until the status
it considers terminal. Every node accepts an injected credential resolver and
httpx client; by default credentials come from the integrations table.
"""
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from shared.credentials import (
    CredentialResolver,
    DatabaseCredentialResolver,
    MULTIMODAL_PROVIDER,
    RELAY_PROVIDER,
    require_credential,
)
from shared.database import get_db_session
from shared.errors import EmptyPromptError, GenerationError
from shared.models import Node, NodeType, utc_now_iso
from .artifacts import persist_artifacts
from .folders import resolve_output_folder
from .graph_ops import get_upstream_nodes, require_node, update_node_metadata
from .multimodal import generate_content, generate_job_id
from .prompt_compiler import (
    build_multimodal_prompt,
    build_relay_prompt,
    collect_reference_images,
    compose_base_prompt,
    extract_prompt_modifiers,
    parse_modifiers,
)
from .relay import CHANGE_PATH, REJECTED_STATUSES, SUBMIT_PATH, poll_job, submit_job, submit_upscale
from .schemas import (
    CompiledPrompt,
    ContextFile,
    GenerationParams,
    ReferenceImage,
    CompileRelayPromptInput, CompileRelayPromptOutput,
    QueueRelayGenerationInput, QueueRelayGenerationOutput,
    CollectRelayResultsInput, CollectRelayResultsOutput,
    RequestRelayUpscaleInput, RequestRelayUpscaleOutput,
    RunMultimodalGenerationInput, RunMultimodalGenerationOutput,
)

logger = structlog.get_logger()

# Storage subdirectory / folder naming per provider
RELAY_STORAGE = "midjourney"
RELAY_JOB_KEY = "midjourney_job_id"
RELAY_FOLDER_TITLE = "Midjourney"

MULTIMODAL_STORAGE = "google_ai_studio"
MULTIMODAL_JOB_KEY = "google_ai_job_id"
MULTIMODAL_FOLDER_TITLE = "Google Studio"


# =============================================================================
# HELPERS
# =============================================================================

async def _load_node_with_upstream(project_id: str, node_id: str) -> Tuple[Node, List[Node]]:
    async with get_db_session() as db:
        node = await require_node(db, project_id, node_id)
        upstream = await get_upstream_nodes(db, project_id, node_id)
    return node, upstream


async def _stamp_node_meta(
    project_id: str,
    node_id: str,
    updates: Dict[str, Any],
) -> Dict[str, Any]:
    """Merge keys into a node's meta in its own transaction."""
    async with get_db_session() as db:
        node = await require_node(db, project_id, node_id, for_update=True)
        return update_node_metadata(node, updates)


def _pick_image_url(node: Node) -> Optional[str]:
    """Image nodes keep their URL in content, or in meta image_url/url/files[0]."""
    content = (node.content or "").strip()
    if content:
        return content
    meta = node.meta or {}
    for key in ("image_url", "url"):
        if isinstance(meta.get(key), str) and meta[key].strip():
            return meta[key].strip()
    files = meta.get("files")
    if isinstance(files, list) and files and isinstance(files[0], dict):
        url = files[0].get("url")
        if isinstance(url, str) and url.strip():
            return url.strip()
    return None


def upstream_files(nodes: List[Node]) -> List[ContextFile]:
    """
    Files contributed by upstream image nodes.

    The file name carries the node's reference purpose (meta
    reference_purpose / purpose), falling back to its title.
    """
    files = []
    for node in nodes:
        if node.type != NodeType.IMAGE.value:
            continue
        url = _pick_image_url(node)
        if not url:
            continue
        meta = node.meta or {}
        purpose = meta.get("reference_purpose") or meta.get("purpose") or node.title or "reference"
        files.append(ContextFile(
            name=str(purpose),
            type="image/base64" if url.startswith("data:") else "image/url",
            content=url,
            source_node_id=node.node_id,
        ))
    return files


def resolve_generation_params(meta: Dict[str, Any], overrides: Optional[GenerationParams]) -> GenerationParams:
    """
    Effective parameters for a node.

    Precedence, lowest first: meta["generation_params"], prompt_modifiers
    lines, explicit overrides.
    """
    stored = meta.get("generation_params")
    params = GenerationParams(**stored) if isinstance(stored, dict) else GenerationParams()
    modifiers = extract_prompt_modifiers(meta)
    if modifiers:
        params = params.merged_with(parse_modifiers(modifiers))
    return params.merged_with(overrides)


def _merge_references(collected: List[ReferenceImage], explicit: List[ReferenceImage]) -> List[ReferenceImage]:
    unique: Dict[str, ReferenceImage] = {}
    for image in [*collected, *explicit]:
        unique[image.url] = image
    return list(unique.values())


async def _compile_for_node(
    project_id: str,
    node_id: str,
    overrides: Optional[GenerationParams],
    explicit_references: List[ReferenceImage],
    mode: str,
) -> CompiledPrompt:
    node, upstream = await _load_node_with_upstream(project_id, node_id)
    meta = node.meta or {}

    params = resolve_generation_params(meta, overrides)
    references = _merge_references(collect_reference_images(upstream_files(upstream)), explicit_references)
    base_prompt = compose_base_prompt(node.content, upstream)

    return build_relay_prompt(base_prompt, references, params, mode=mode)


# =============================================================================
# RELAY NODES
# =============================================================================

async def compile_relay_prompt(
    ctx,
    params: CompileRelayPromptInput,
    resolver: Optional[CredentialResolver] = None,
) -> CompileRelayPromptOutput:
    """
    Compile the relay prompt for a node without submitting it.

    Mode comes from params, else from the resolver's credential when one is
    injected, else "photo".
    """
    ctx.report_input({
        "project_id": params.project_id,
        "node_id": params.node_id,
        "has_overrides": params.params is not None,
        "explicit_references": len(params.reference_images),
    })

    mode = params.mode
    if mode is None and resolver is not None:
        credential = await resolver.resolve(RELAY_PROVIDER)
        mode = credential.mode if credential else None

    compiled = await _compile_for_node(
        params.project_id,
        params.node_id,
        params.params,
        params.reference_images,
        mode or "photo",
    )

    ctx.report_output({
        "prompt_preview": compiled.prompt_text[:200],
        "flags": compiled.flags,
        **compiled.stats.model_dump(),
    })

    return CompileRelayPromptOutput(
        prompt_text=compiled.prompt_text,
        flags=compiled.flags,
        reference_image_count=len(compiled.reference_images),
        stats=compiled.stats,
    )


async def queue_relay_generation(
    ctx,
    params: QueueRelayGenerationInput,
    resolver: Optional[CredentialResolver] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> QueueRelayGenerationOutput:
    """
    Compile and submit a relay job for a node.

    Unless the relay rejected the job (banned prompt, full queue) the output
    folder is resolved right away so the canvas shows where results will land.
    The node's meta records the job id, status and the request that was sent
    (without credentials).
    """
    ctx.report_input({
        "project_id": params.project_id,
        "node_id": params.node_id,
        "has_overrides": params.params is not None,
        "explicit_references": len(params.reference_images),
    })

    resolver = resolver or DatabaseCredentialResolver()

    try:
        credential = await require_credential(resolver, RELAY_PROVIDER)
        compiled = await _compile_for_node(
            params.project_id,
            params.node_id,
            params.params,
            params.reference_images,
            credential.mode,
        )
        job = await submit_job(compiled.prompt_text, credential, client=client)
    except GenerationError as e:
        logger.error("relay_queue_failed", project_id=params.project_id, node_id=params.node_id, error=str(e))
        ctx.report_output({"status": "error", "error": str(e)})
        raise

    folder_node_id = None
    if job.status in REJECTED_STATUSES:
        ctx.warning(f"Relay rejected the job: {job.status} ({job.description or 'no description'})")
    else:
        folder = await resolve_output_folder(
            params.project_id,
            params.node_id,
            job.job_id,
            provider=RELAY_STORAGE,
            job_meta_key=RELAY_JOB_KEY,
            title_prefix=RELAY_FOLDER_TITLE,
        )
        folder_node_id = folder.node_id

    await _stamp_node_meta(params.project_id, params.node_id, {
        RELAY_JOB_KEY: job.job_id,
        "midjourney_status": job.status,
        "midjourney_code": job.code,
        "midjourney_description": job.description,
        "midjourney_submitted_at": utc_now_iso(),
        "last_request_payload": {
            "url": f"{credential.base_url}{SUBMIT_PATH}",
            "body": {"prompt": compiled.prompt_text},
            "reference_images": [image.model_dump(exclude_none=True) for image in compiled.reference_images],
            "integration_id": credential.integration_id,
            "mode": credential.mode,
        },
    })

    ctx.report_output({
        "job_id": job.job_id,
        "status": job.status,
        "code": job.code,
        "folder_node_id": folder_node_id,
        "prompt_preview": compiled.prompt_text[:200],
    })

    return QueueRelayGenerationOutput(
        job_id=job.job_id,
        status=job.status,
        code=job.code,
        description=job.description,
        prompt_text=compiled.prompt_text,
        folder_node_id=folder_node_id,
    )


async def collect_relay_results(
    ctx,
    params: CollectRelayResultsInput,
    resolver: Optional[CredentialResolver] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> CollectRelayResultsOutput:
    """
    Poll a relay job once and persist any artifacts it reports.

    Safe to call repeatedly: artifacts already in the folder are skipped.
    """
    resolver = resolver or DatabaseCredentialResolver()

    job_id = params.job_id
    if not job_id:
        node, _ = await _load_node_with_upstream(params.project_id, params.node_id)
        job_id = (node.meta or {}).get(RELAY_JOB_KEY)
    if not job_id:
        raise ValueError(f"Node {params.node_id} has no relay job to collect")

    ctx.report_input({"project_id": params.project_id, "node_id": params.node_id, "job_id": job_id})

    try:
        credential = await require_credential(resolver, RELAY_PROVIDER)
        result = await poll_job(job_id, credential, client=client)
    except GenerationError as e:
        logger.error("relay_collect_failed", job_id=job_id, error=str(e))
        ctx.report_output({"status": "error", "job_id": job_id, "error": str(e)})
        raise

    status_updates = {
        "midjourney_status": result.status,
        "midjourney_progress": result.progress,
        "midjourney_error": result.error,
        "midjourney_last_polled_at": utc_now_iso(),
    }

    folder_node_id = None
    added = 0
    artifact_count = 0
    failed_urls: List[str] = []

    if result.artifacts:
        folder = await resolve_output_folder(
            params.project_id,
            params.node_id,
            job_id,
            provider=RELAY_STORAGE,
            job_meta_key=RELAY_JOB_KEY,
            title_prefix=RELAY_FOLDER_TITLE,
        )
        folder_node_id = folder.node_id
        persisted = await persist_artifacts(
            params.project_id,
            params.node_id,
            folder.node_id,
            job_id,
            result.artifacts,
            provider=RELAY_STORAGE,
            client=client,
            source_meta_updates=status_updates,
        )
        added = len(persisted.added)
        artifact_count = len(persisted.artifacts)
        failed_urls = persisted.failed_urls
        for url in failed_urls:
            ctx.warning(f"Failed to store artifact {url[:120]}")
    else:
        meta = await _stamp_node_meta(params.project_id, params.node_id, status_updates)
        folder_node_id = meta.get("output_folder_id")

    ctx.report_output({
        "job_id": job_id,
        "status": result.status,
        "progress": result.progress,
        "artifacts_added": added,
        "artifact_count": artifact_count,
        "folder_node_id": folder_node_id,
        "error": result.error,
    })

    return CollectRelayResultsOutput(
        job_id=job_id,
        status=result.status,
        progress=result.progress,
        error=result.error,
        folder_node_id=folder_node_id,
        artifacts_added=added,
        artifact_count=artifact_count,
        failed_urls=failed_urls,
    )


async def request_relay_upscale(
    ctx,
    params: RequestRelayUpscaleInput,
    resolver: Optional[CredentialResolver] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> RequestRelayUpscaleOutput:
    """
    Upscale one variant of a finished job.

    The upscale job replaces the node's current job id, so the next
    collect_relay_results call polls it and adds the result to the same folder.
    """
    resolver = resolver or DatabaseCredentialResolver()

    task_id = params.task_id
    if not task_id:
        node, _ = await _load_node_with_upstream(params.project_id, params.node_id)
        task_id = (node.meta or {}).get(RELAY_JOB_KEY)
    if not task_id:
        raise ValueError(f"Node {params.node_id} has no relay job to upscale")

    ctx.report_input({"project_id": params.project_id, "node_id": params.node_id, "task_id": task_id, "index": params.index})

    try:
        credential = await require_credential(resolver, RELAY_PROVIDER)
        job = await submit_upscale(task_id, params.index, credential, client=client)
    except GenerationError as e:
        logger.error("relay_upscale_failed", task_id=task_id, index=params.index, error=str(e))
        ctx.report_output({"status": "error", "task_id": task_id, "error": str(e)})
        raise

    await _stamp_node_meta(params.project_id, params.node_id, {
        RELAY_JOB_KEY: job.job_id,
        "midjourney_status": job.status,
        "midjourney_parent_job_id": task_id,
        "midjourney_upscale_index": params.index,
        "last_request_payload": {
            "url": f"{credential.base_url}{CHANGE_PATH}",
            "body": {"taskId": task_id, "action": "UPSCALE", "index": params.index},
        },
    })

    ctx.report_output({"job_id": job.job_id, "status": job.status, "parent_job_id": task_id, "index": params.index})

    return RequestRelayUpscaleOutput(
        job_id=job.job_id,
        status=job.status,
        parent_job_id=task_id,
        index=params.index,
    )


# =============================================================================
# MULTIMODAL NODE
# =============================================================================

async def run_multimodal_generation(
    ctx,
    params: RunMultimodalGenerationInput,
    resolver: Optional[CredentialResolver] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> RunMultimodalGenerationOutput:
    """
    Generate images/text with the multimodal provider for a node.

    Inline image outputs are stored in the node's output folder; text outputs
    are recorded on the node (google_ai_text_outputs).
    """
    resolver = resolver or DatabaseCredentialResolver()
    credential = await require_credential(resolver, MULTIMODAL_PROVIDER)

    node, upstream = await _load_node_with_upstream(params.project_id, params.node_id)
    prompt = build_multimodal_prompt(node.content, upstream)
    if not prompt:
        raise EmptyPromptError("Prompt is empty. Add content to the node or connect context nodes.")

    files = upstream_files(upstream) + list(params.files)

    ctx.report_input({
        "project_id": params.project_id,
        "node_id": params.node_id,
        "model": credential.model,
        "mode": credential.mode,
        "prompt_length": len(prompt),
        "files": len(files),
        "schema_ref": params.schema_ref,
    })

    job_id = generate_job_id()
    folder = await resolve_output_folder(
        params.project_id,
        params.node_id,
        job_id,
        provider=MULTIMODAL_STORAGE,
        job_meta_key=MULTIMODAL_JOB_KEY,
        title_prefix=MULTIMODAL_FOLDER_TITLE,
    )
    await _stamp_node_meta(params.project_id, params.node_id, {"google_ai_status": "running"})
    ctx.report_progress(20, f"Calling {credential.model}...")

    try:
        generation = await generate_content(
            prompt,
            credential,
            files=files,
            system_instruction=params.system_prompt,
            schema_ref=params.schema_ref,
            job_id=job_id,
            client=client,
        )
    except GenerationError as e:
        logger.error("multimodal_generation_failed", job_id=job_id, error=str(e))
        await _stamp_node_meta(params.project_id, params.node_id, {
            "google_ai_status": "failed",
            "google_ai_error": str(e),
        })
        ctx.report_output({"status": "error", "job_id": job_id, "error": str(e)})
        raise

    status = "blocked" if generation.block_reason else "completed"
    status_updates = {
        "google_ai_status": status,
        "google_ai_model": generation.model,
        "google_ai_text_outputs": generation.text_outputs,
        "google_ai_block_reason": generation.block_reason,
        "google_ai_error": None,
        "google_ai_last_generated_at": utc_now_iso(),
    }

    ctx.report_progress(80, f"Storing {len(generation.artifacts)} artifacts...")

    added = 0
    artifact_count = len(folder.artifacts)
    if generation.artifacts:
        persisted = await persist_artifacts(
            params.project_id,
            params.node_id,
            folder.node_id,
            job_id,
            generation.artifacts,
            provider=MULTIMODAL_STORAGE,
            client=client,
            source_meta_updates=status_updates,
        )
        added = len(persisted.added)
        artifact_count = len(persisted.artifacts)
        for url in persisted.failed_urls:
            ctx.warning(f"Failed to store artifact {url[:120]}")
    else:
        await _stamp_node_meta(params.project_id, params.node_id, status_updates)

    if generation.block_reason:
        ctx.warning(f"Prompt blocked by provider: {generation.block_reason}")

    ctx.report_output({
        "job_id": job_id,
        "status": status,
        "model": generation.model,
        "artifacts_added": added,
        "artifact_count": artifact_count,
        "text_outputs": len(generation.text_outputs),
        "folder_node_id": folder.node_id,
    })

    return RunMultimodalGenerationOutput(
        job_id=job_id,
        status=status,
        model=generation.model,
        folder_node_id=folder.node_id,
        artifacts_added=added,
        artifact_count=artifact_count,
        text_outputs=generation.text_outputs,
    )
