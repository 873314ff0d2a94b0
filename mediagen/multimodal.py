"""
Synchronous multimodal generation (Gemini generateContent).

One POST per call:
    POST {base_url}/v1beta/models/{model}:generateContent
    x-goog-api-key: <key>

Candidates are scanned for inlineData parts (artifacts) and text parts (text
outputs). Errors map onto the same taxonomy as the relay: TransportError for
HTTP/network failures, ProtocolError for malformed bodies.

API docs: https://ai.google.dev/gemini-api/docs/text-generation
"""
import os
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx
import structlog

from shared.credentials import IntegrationConfig
from shared.errors import ProtocolError, TransportError
from shared.models import utc_now_iso
from shared.storage import parse_data_url
from .prompts import (
    DEFAULT_IMAGE_SYSTEM_PROMPT,
    DEFAULT_TEXT_SYSTEM_PROMPT,
    PLAN_SCHEMA_INSTRUCTIONS,
    REFERENCE_FILE_TEMPLATE,
    REFERENCE_IMAGE_TEMPLATE,
    STRICT_FORMAT_SUFFIX,
    SYSTEM_REQUIREMENTS,
    TEXT_RESPONSE_INSTRUCTIONS,
)
from .schemas import Artifact, ContextFile, MultimodalGeneration, PlanResponse, TextResponse

logger = structlog.get_logger()

GEMINI_TIMEOUT = float(os.environ.get("GEMINI_TIMEOUT", "30"))

# Keep error bodies short enough for a log line
MAX_ERROR_BODY_CHARS = 500

# schema_ref -> (response model, instructions appended to the system prompt)
RESPONSE_SCHEMAS = {
    "TEXT_RESPONSE": (TextResponse, TEXT_RESPONSE_INSTRUCTIONS),
    "PLAN_SCHEMA": (PlanResponse, PLAN_SCHEMA_INSTRUCTIONS),
}

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def generate_job_id() -> str:
    """Local job id for a synchronous generation: gaistudio-<base36 ms>-<6 hex>."""
    return f"gaistudio-{_base36(int(time.time() * 1000))}-{uuid.uuid4().hex[:6]}"


# =============================================================================
# RESPONSE SCHEMA CONVERSION
# =============================================================================

def to_gemini_schema(pydantic_schema: dict) -> Optional[dict]:
    """
    Convert a Pydantic JSON schema to Gemini's responseSchema format.

    Gemini expects a simplified schema without:
    - $defs (definitions are inlined)
    - additionalProperties
    - title / $schema

    Returns None if the schema contains unsupported features that can't be converted.

    See: https://ai.google.dev/gemini-api/docs/structured-output
    """
    defs = pydantic_schema.get("$defs", {})
    unsupported = []

    def simplify(schema: dict) -> dict:
        if "$ref" in schema:
            ref_path = schema["$ref"]
            if ref_path.startswith("#/$defs/") and ref_path[8:] in defs:
                return simplify(defs[ref_path[8:]])
            return {"type": "object"}

        # Optional[X] arrives as anyOf [X, null]
        if "anyOf" in schema:
            variants = [v for v in schema["anyOf"] if v.get("type") != "null"]
            if len(variants) != 1:
                unsupported.append("anyOf")
                return {"type": "object"}
            simplified = simplify(variants[0])
            simplified["nullable"] = True
            return simplified

        if "additionalProperties" in schema and schema["additionalProperties"] is not False:
            unsupported.append("additionalProperties")
            return {"type": "object"}

        result = {}
        for key in ("type", "description", "enum", "required", "minItems", "maxItems", "minimum", "maximum"):
            if key in schema:
                result[key] = schema[key]

        if "properties" in schema:
            result["properties"] = {k: simplify(v) for k, v in schema["properties"].items()}

        if "items" in schema:
            result["items"] = simplify(schema["items"])

        return result

    simplified = simplify(pydantic_schema)

    if unsupported:
        logger.info("gemini_schema_unsupported", features=sorted(set(unsupported)))
        return None

    return simplified


# =============================================================================
# PAYLOAD
# =============================================================================

def build_system_instruction(
    system_prompt: Optional[str],
    schema_ref: Optional[str] = None,
    mode: str = "image",
) -> str:
    base = (system_prompt or "").strip()
    if not base:
        base = DEFAULT_TEXT_SYSTEM_PROMPT if mode == "text" else DEFAULT_IMAGE_SYSTEM_PROMPT

    segments = [base, SYSTEM_REQUIREMENTS]
    schema_entry = RESPONSE_SCHEMAS.get((schema_ref or "").upper())
    if schema_entry:
        segments.append(schema_entry[1])
        segments.append(STRICT_FORMAT_SUFFIX)
    return "\n\n".join(segments)


def file_to_part(file: ContextFile) -> Optional[Dict[str, Any]]:
    """One request part per upstream file; unsupported types are skipped."""
    content = file.content or ""
    if not content.strip():
        return None

    file_type = (file.type or "").lower()
    if file_type == "image/base64":
        mime_type, payload = parse_data_url(content)
        return {"inlineData": {"mimeType": mime_type or "image/png", "data": payload}}
    if file_type == "image/url":
        return {"text": REFERENCE_IMAGE_TEMPLATE.format(url=content.strip())}
    if file_type.startswith("text/") or "json" in file_type or "markdown" in file_type:
        return {"text": REFERENCE_FILE_TEMPLATE.format(name=file.name or "file", content=content)}
    return None


def build_generate_content_payload(
    prompt: str,
    *,
    files: Optional[List[ContextFile]] = None,
    system_instruction: Optional[str] = None,
    schema_ref: Optional[str] = None,
    mode: str = "image",
) -> Dict[str, Any]:
    """
    Build a generateContent request body.

    Args:
        prompt: User prompt text
        files: Upstream files (base64 images inline, URLs and text as text parts)
        system_instruction: Base system prompt; defaults depend on mode
        schema_ref: TEXT_RESPONSE or PLAN_SCHEMA for structured JSON output
        mode: "image" or "text"
    """
    parts: List[Dict[str, Any]] = [{"text": prompt}]
    for file in files or []:
        part = file_to_part(file)
        if part is not None:
            parts.append(part)

    generation_config: Dict[str, Any] = {
        "temperature": 0.7 if mode == "text" else 0.3,
        "topK": 40,
        "topP": 0.8,
    }

    schema_entry = RESPONSE_SCHEMAS.get((schema_ref or "").upper())
    if schema_entry:
        gemini_schema = to_gemini_schema(schema_entry[0].model_json_schema())
        generation_config["responseMimeType"] = "application/json"
        if gemini_schema:
            generation_config["responseSchema"] = gemini_schema
    elif mode == "image":
        generation_config["responseModalities"] = ["TEXT", "IMAGE"]

    return {
        "contents": [{"role": "user", "parts": parts}],
        "systemInstruction": {
            "parts": [{"text": build_system_instruction(system_instruction, schema_ref, mode)}],
        },
        "generationConfig": generation_config,
    }


# =============================================================================
# RESPONSE
# =============================================================================

def decode_generate_content_response(
    data: Dict[str, Any],
    job_id: str,
    model: str,
    max_outputs: Optional[int] = None,
) -> MultimodalGeneration:
    candidates = data.get("candidates")
    candidates = candidates if isinstance(candidates, list) else []

    artifacts: List[Artifact] = []
    texts: List[str] = []
    now = utc_now_iso()

    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        content = candidate.get("content") if isinstance(candidate.get("content"), dict) else {}
        parts = content.get("parts") if isinstance(content.get("parts"), list) else candidate.get("parts")
        if not isinstance(parts, list):
            continue

        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData") or part.get("inline_data")
            if isinstance(inline, dict) and isinstance(inline.get("data"), str):
                artifacts.append(Artifact(
                    url="",
                    mime_type=inline.get("mimeType") or inline.get("mime_type") or "image/png",
                    base64_data=inline["data"],
                    job_id=job_id,
                    source="inlineData",
                    created_at=now,
                ))
            elif isinstance(part.get("text"), str) and part["text"].strip():
                texts.append(part["text"].strip())

    if max_outputs and len(artifacts) > max_outputs:
        artifacts = artifacts[:max_outputs]

    feedback = data.get("promptFeedback") if isinstance(data.get("promptFeedback"), dict) else {}
    block_reason = feedback.get("blockReason") if isinstance(feedback.get("blockReason"), str) else None

    return MultimodalGeneration(
        job_id=job_id,
        model=model,
        artifacts=artifacts,
        text_outputs=texts,
        candidate_count=len(candidates),
        block_reason=block_reason,
        raw=data,
    )


async def generate_content(
    prompt: str,
    credential: IntegrationConfig,
    *,
    files: Optional[List[ContextFile]] = None,
    system_instruction: Optional[str] = None,
    schema_ref: Optional[str] = None,
    job_id: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = GEMINI_TIMEOUT,
) -> MultimodalGeneration:
    """
    Run one generateContent request.

    Raises:
        TransportError: Non-2xx, timeout, or network failure
        ProtocolError: Body is not a JSON object
    """
    model = credential.model or "gemini-2.0-flash-exp"
    job_id = job_id or generate_job_id()
    url = f"{credential.base_url}/v1beta/models/{model}:generateContent"
    payload = build_generate_content_payload(
        prompt,
        files=files,
        system_instruction=system_instruction,
        schema_ref=schema_ref,
        mode=credential.mode,
    )

    logger.info(
        "calling_gemini",
        model=model,
        job_id=job_id,
        prompt_len=len(prompt),
        parts=len(payload["contents"][0]["parts"]),
        schema_ref=schema_ref,
        mode=credential.mode,
        api_key=credential.masked_token,
    )

    close_client = False
    if client is None:
        client = httpx.AsyncClient(timeout=timeout)
        close_client = True

    try:
        try:
            response = await client.post(
                url,
                headers={
                    "Content-Type": "application/json",
                    "x-goog-api-key": credential.token,
                },
                json=payload,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            logger.error("gemini_request_timeout", model=model, job_id=job_id, timeout=timeout)
            raise TransportError(f"Gemini generateContent timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            logger.error("gemini_request_failed", model=model, job_id=job_id, error=str(e))
            raise TransportError(f"Gemini generateContent failed: {e}") from e
    finally:
        if close_client:
            await client.aclose()

    if response.status_code < 200 or response.status_code >= 300:
        body = response.text[:MAX_ERROR_BODY_CHARS]
        logger.error("gemini_http_error", model=model, job_id=job_id, status_code=response.status_code, body=body)
        raise TransportError(
            f"Gemini returned {response.status_code} (key {credential.masked_token}): {body}",
            status_code=response.status_code,
            body=body,
        )

    try:
        data = response.json()
    except ValueError as e:
        raise ProtocolError("Gemini returned a non-JSON body", payload=response.text[:MAX_ERROR_BODY_CHARS]) from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Gemini returned {type(data).__name__}, expected an object", payload=data)

    generation = decode_generate_content_response(data, job_id, model, credential.max_outputs)
    logger.info(
        "gemini_response",
        model=model,
        job_id=job_id,
        candidates=generation.candidate_count,
        artifacts=len(generation.artifacts),
        text_outputs=len(generation.text_outputs),
        block_reason=generation.block_reason,
    )
    return generation
