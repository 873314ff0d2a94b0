"""
Job submission and polling against the generation relay.

- submit_job: POST {base}/mj/submit/imagine, one request per call
- poll_job: GET {base}/mj/task/{id}/fetch, one request per call
- submit_upscale: POST {base}/mj/submit/change for a grid variant

Polling cadence and the choice of terminal statuses belong to the caller.
Relay rejections (banned prompt, full queue) come back as statuses.
"""
from typing import Any, Dict, List, Optional

import httpx
import structlog

from shared.credentials import IntegrationConfig
from shared.errors import MissingJobIdError
from shared.models import utc_now_iso
from shared.relay_client import RELAY_POLL_TIMEOUT, RELAY_SUBMIT_TIMEOUT, RelayClient
from .schemas import Artifact, Job, JobPollResult, coerce_number

logger = structlog.get_logger()

SUBMIT_PATH = "/mj/submit/imagine"
CHANGE_PATH = "/mj/submit/change"
FETCH_PATH = "/mj/task/{job_id}/fetch"

# Relay submit codes -> job status; anything else is "queued"
SUBMIT_STATUS_BY_CODE: Dict[int, str] = {
    1: "submitted",
    21: "exists",
    22: "queued",
    23: "queue_full",
    24: "banned_prompt",
}
DEFAULT_SUBMIT_STATUS = "queued"

# Statuses that mean the relay refused the job; no folder, no polling
REJECTED_STATUSES = frozenset({"queue_full", "banned_prompt"})

# Conventional terminal statuses reported by the fetch endpoint
TERMINAL_STATUSES = frozenset({"completed", "success", "failed", "failure", "error"})

UPSCALE_INDEXES = range(1, 5)


# =============================================================================
# DECODING
# =============================================================================

def status_for_code(code: Optional[int]) -> str:
    if code is None:
        return DEFAULT_SUBMIT_STATUS
    return SUBMIT_STATUS_BY_CODE.get(code, DEFAULT_SUBMIT_STATUS)


def decode_submit_response(data: Dict[str, Any], provider_id: str) -> Job:
    """
    Build a Job from a submit/imagine (or submit/change) body.

    Raises:
        MissingJobIdError: When `result` is missing or blank
    """
    raw_code = data.get("code")
    code = raw_code if isinstance(raw_code, int) and not isinstance(raw_code, bool) else None
    description = data.get("description") if isinstance(data.get("description"), str) else None

    job_id = data.get("result")
    if isinstance(job_id, int) and not isinstance(job_id, bool):
        job_id = str(job_id)
    if not isinstance(job_id, str) or not job_id.strip():
        logger.error("relay_response_missing_job_id", code=code, description=description)
        raise MissingJobIdError(
            f"Relay response is missing the job id: {description or 'no description'}",
            payload=data,
        )

    return Job(
        job_id=job_id.strip(),
        status=status_for_code(code),
        provider_id=provider_id,
        code=code,
        description=description,
        raw=data,
    )


def normalize_artifact(candidate: Any, job_id: str) -> Optional[Artifact]:
    """Keep candidates that carry a string url; drop everything else."""
    if not isinstance(candidate, dict):
        return None
    url = candidate.get("url")
    if not isinstance(url, str) or not url:
        return None

    def _str(key: str) -> Optional[str]:
        value = candidate.get(key)
        return value if isinstance(value, str) else None

    def _int(key: str) -> Optional[int]:
        value = candidate.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return int(value)

    return Artifact(
        url=url,
        filename=_str("filename"),
        mime_type=_str("mime_type") or _str("mimeType"),
        width=_int("width"),
        height=_int("height"),
        source=_str("source"),
        job_id=job_id,
        created_at=utc_now_iso(),
    )


def decode_poll_response(data: Dict[str, Any], job_id: str) -> JobPollResult:
    """Build a JobPollResult from a task fetch body."""
    status = data.get("status")
    if not isinstance(status, str) or not status:
        status = "unknown"

    progress = coerce_number(data.get("progress"))

    candidates: List[Any] = data.get("artifacts") if isinstance(data.get("artifacts"), list) else []
    if not candidates and isinstance(data.get("imageUrl"), str) and data.get("imageUrl"):
        # Older relays report a single image
        candidates = [{"url": data["imageUrl"], "source": "imageUrl"}]

    artifacts = [a for a in (normalize_artifact(c, job_id) for c in candidates) if a is not None]
    discarded = len(candidates) - len(artifacts)
    if discarded:
        logger.warning("relay_artifacts_discarded", job_id=job_id, discarded=discarded)

    error = data.get("error")
    if not isinstance(error, str) or not error:
        error = data.get("failReason") if isinstance(data.get("failReason"), str) else None

    return JobPollResult(
        job_id=job_id,
        status=status,
        progress=float(progress) if progress is not None else None,
        artifacts=artifacts,
        error=error or None,
        raw=data,
    )


def is_terminal(status: str) -> bool:
    """Conventional reading of fetch statuses; callers may use their own."""
    return status.lower() in TERMINAL_STATUSES


# =============================================================================
# REQUESTS
# =============================================================================

async def submit_job(
    prompt: str,
    credential: IntegrationConfig,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = RELAY_SUBMIT_TIMEOUT,
) -> Job:
    """
    Submit one imagine job.

    Args:
        prompt: Compiled prompt text
        credential: Relay credential snapshot
        client: Optional httpx client (creates one if not provided)
        timeout: Request timeout in seconds

    Returns:
        Job with the relay's job id and mapped status

    Raises:
        SubmissionError: Relay answered non-2xx
        TransportError: Timeout or network failure
        ProtocolError: Body is not a JSON object
        MissingJobIdError: Body carries no job id
    """
    logger.info(
        "relay_job_submitting",
        url=f"{credential.base_url}{SUBMIT_PATH}",
        prompt_length=len(prompt),
        prompt_preview=prompt[:120],
        token=credential.masked_token,
    )

    async with RelayClient(credential, client=client) as relay:
        data = await relay.post_json(SUBMIT_PATH, {"prompt": prompt}, timeout=timeout)

    job = decode_submit_response(data, credential.provider_id)
    logger.info(
        "relay_job_submitted",
        job_id=job.job_id,
        status=job.status,
        code=job.code,
        description=job.description,
    )
    return job


async def poll_job(
    job_id: str,
    credential: IntegrationConfig,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = RELAY_POLL_TIMEOUT,
) -> JobPollResult:
    """
    Check a job's status once.

    Raises:
        TransportError: Non-2xx, timeout, or network failure
        ProtocolError: Body is not a JSON object
    """
    if not job_id:
        raise ValueError("job_id is required")

    async with RelayClient(credential, client=client) as relay:
        data = await relay.get_json(FETCH_PATH.format(job_id=job_id), timeout=timeout)

    result = decode_poll_response(data, job_id)
    logger.info(
        "relay_job_polled",
        job_id=job_id,
        status=result.status,
        progress=result.progress,
        artifacts=len(result.artifacts),
        error=result.error,
    )
    return result


async def submit_upscale(
    task_id: str,
    index: int,
    credential: IntegrationConfig,
    *,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = RELAY_SUBMIT_TIMEOUT,
) -> Job:
    """
    Request an upscale of one variant (1-4) of a finished grid job.

    The new job starts "queued" unless the relay reports a code.
    """
    if index not in UPSCALE_INDEXES:
        raise ValueError(f"Upscale index must be between 1 and 4, got {index}")
    if not task_id:
        raise ValueError("task_id is required")

    logger.info("relay_upscale_submitting", task_id=task_id, index=index, token=credential.masked_token)

    async with RelayClient(credential, client=client) as relay:
        data = await relay.post_json(
            CHANGE_PATH,
            {"taskId": task_id, "action": "UPSCALE", "index": index},
            timeout=timeout,
        )

    job = decode_submit_response(data, credential.provider_id)
    logger.info("relay_upscale_submitted", task_id=task_id, index=index, job_id=job.job_id, status=job.status)
    return job

