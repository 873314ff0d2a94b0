"""
Project-scoped file storage for generated assets.

Layout: <storage_root>/<project_id>/assets/<subdir>/<filename>

Filenames derive from the source URL (or the payload hash for inline data), so
storing the same artifact twice overwrites one file instead of adding another.
"""
import base64
import binascii
import hashlib
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx
import structlog

logger = structlog.get_logger()

STORAGE_ROOT = Path(os.environ.get("MEDIAGEN_STORAGE_ROOT", "./data/projects"))
PUBLIC_PREFIX = os.environ.get("MEDIAGEN_PUBLIC_PREFIX", "/uploads").rstrip("/")
ASSET_DOWNLOAD_TIMEOUT = float(os.environ.get("ASSET_DOWNLOAD_TIMEOUT", "30"))

_DATA_URL_RE = re.compile(r"^data:([^;,]+);base64,(.*)$", re.IGNORECASE | re.DOTALL)
_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9_.-]")

# Substring of the mime type -> extension, first match wins
_MIME_EXTENSIONS = [
    ("png", "png"),
    ("jpeg", "jpg"),
    ("jpg", "jpg"),
    ("webp", "webp"),
    ("gif", "gif"),
    ("bmp", "bmp"),
    ("mp4", "mp4"),
    ("webm", "webm"),
    ("ogg", "ogg"),
    ("quicktime", "mov"),
    ("mov", "mov"),
]

_EXTENSION_MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "bmp": "image/bmp",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
}


@dataclass
class StoredFile:
    """A file written into project storage."""
    absolute_path: Path
    relative_path: str  # Relative to the project directory, forward slashes
    filename: str
    mime_type: str
    size: int


def configure_storage(root) -> Path:
    """Rebind the storage root (scripts and tests)."""
    global STORAGE_ROOT
    STORAGE_ROOT = Path(root)
    logger.info("storage_configured", root=str(STORAGE_ROOT))
    return STORAGE_ROOT


def get_project_dir(project_id: str) -> Path:
    return STORAGE_ROOT / sanitize_segment(project_id)


def public_url(project_id: str, relative_path: str) -> str:
    """Public URL under which the host serves a stored file."""
    return f"{PUBLIC_PREFIX}/{sanitize_segment(project_id)}/{relative_path}"


def sanitize_segment(segment: str) -> str:
    return _UNSAFE_CHARS_RE.sub("_", segment)


def sanitize_subdir(subdir: Optional[str]) -> Optional[Path]:
    """Split on slashes, drop empty / dot segments, sanitize the rest."""
    if not subdir:
        return None
    segments = [
        sanitize_segment(part.strip())
        for part in re.split(r"[\\/]+", subdir)
        if part.strip() and part.strip() not in (".", "..")
    ]
    if not segments:
        return None
    return Path(*segments)


def infer_extension(mime_type: Optional[str]) -> str:
    if not mime_type:
        return "bin"
    lowered = mime_type.lower()
    for needle, ext in _MIME_EXTENSIONS:
        if needle in lowered:
            return ext
    return "bin"


def guess_mime_type(filename: str, fallback: str = "application/octet-stream") -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return _EXTENSION_MIME_TYPES.get(ext, fallback)


def url_digest(value: str, length: int = 12) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def derive_filename(url: str, mime_type: Optional[str] = None) -> str:
    """
    Deterministic local filename for a remote URL.

    "<digest>_<basename>" where digest is a short sha256 of the full URL, so
    two URLs sharing a basename never collide and one URL always maps to
    the same name.
    """
    digest = url_digest(url)
    basename = ""
    try:
        basename = os.path.basename(urlparse(url).path)
    except ValueError:
        pass

    if basename and basename not in ("/", "."):
        name = sanitize_segment(basename)
        if "." not in name and mime_type:
            name = f"{name}.{infer_extension(mime_type)}"
        return f"{digest}_{name}"

    return f"{digest}.{infer_extension(mime_type)}"


def _target_dir(project_id: str, subdir: Optional[str]) -> Path:
    project_dir = get_project_dir(project_id)
    assets_dir = project_dir / "assets"
    clean_subdir = sanitize_subdir(subdir)
    target = assets_dir / clean_subdir if clean_subdir else assets_dir
    target.mkdir(parents=True, exist_ok=True)
    return target


def _stored(project_id: str, absolute_path: Path, mime_type: str) -> StoredFile:
    relative = absolute_path.relative_to(get_project_dir(project_id)).as_posix()
    return StoredFile(
        absolute_path=absolute_path,
        relative_path=relative,
        filename=absolute_path.name,
        mime_type=mime_type,
        size=absolute_path.stat().st_size,
    )


async def download_remote_asset(
    project_id: str,
    url: str,
    subdir: Optional[str] = None,
    filename: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> StoredFile:
    """
    Download a remote file into project storage.

    Args:
        project_id: Owning project
        url: http(s) URL to fetch
        subdir: Path under the project's assets directory
        filename: Explicit filename (derived from the URL when omitted)
        client: Optional httpx client (creates one if not provided)

    Returns:
        StoredFile describing the written file

    Raises:
        httpx.HTTPError: On non-2xx responses, timeouts, or network failures
    """
    close_client = False
    if client is None:
        client = httpx.AsyncClient(timeout=ASSET_DOWNLOAD_TIMEOUT, follow_redirects=True)
        close_client = True

    try:
        target_dir = _target_dir(project_id, subdir)

        async with client.stream("GET", url, timeout=ASSET_DOWNLOAD_TIMEOUT) as response:
            if response.status_code >= 400:
                raise httpx.HTTPStatusError(
                    f"HTTP {response.status_code}: {response.reason_phrase}",
                    request=response.request,
                    response=response,
                )

            content_type = response.headers.get("content-type", "")
            mime_type = content_type.split(";")[0].strip() or "application/octet-stream"
            name = sanitize_segment(filename or derive_filename(url, mime_type))
            absolute_path = target_dir / name
            partial_path = absolute_path.with_name(f".{absolute_path.name}.{uuid.uuid4().hex[:8]}.part")

            try:
                with open(partial_path, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
                os.replace(partial_path, absolute_path)
            except BaseException:
                partial_path.unlink(missing_ok=True)
                raise

        if mime_type == "application/octet-stream":
            mime_type = guess_mime_type(name)

        stored = _stored(project_id, absolute_path, mime_type)
        logger.info(
            "asset_downloaded",
            project_id=project_id,
            path=stored.relative_path,
            size=stored.size,
            mime_type=mime_type,
        )
        return stored

    finally:
        if close_client:
            await client.aclose()


def parse_data_url(value: str) -> tuple:
    """Split a data: URL into (mime_type, base64_payload); (None, value) otherwise."""
    match = _DATA_URL_RE.match(value.strip())
    if match:
        return match.group(1), match.group(2)
    return None, value.strip()


async def save_base64_asset(
    project_id: str,
    data: str,
    subdir: Optional[str] = None,
    mime_type: Optional[str] = None,
    filename: Optional[str] = None,
) -> StoredFile:
    """
    Decode base64 (or a data: URL) into project storage.

    Raises:
        ValueError: When the payload is not valid base64
    """
    embedded_mime, payload = parse_data_url(data)
    effective_mime = embedded_mime or mime_type or "application/octet-stream"

    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 payload: {e}") from e

    if not raw:
        raise ValueError("Empty base64 payload")

    name = sanitize_segment(
        filename or f"inline_{hashlib.sha256(raw).hexdigest()[:16]}.{infer_extension(effective_mime)}"
    )
    absolute_path = _target_dir(project_id, subdir) / name
    absolute_path.write_bytes(raw)

    stored = _stored(project_id, absolute_path, effective_mime)
    logger.info(
        "asset_saved_from_base64",
        project_id=project_id,
        path=stored.relative_path,
        size=stored.size,
        mime_type=effective_mime,
    )
    return stored
