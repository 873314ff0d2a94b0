"""
Prompt compilation for the generation relay.

Turns node content, upstream context, reference images and a parameter bag
into one provider-native prompt string:

    <image-prompt URLs> <style-reference URLs> <text> <flags>

Flags follow a fixed order: version, --style raw, --ar, --s, --w, --vary,
speed, --cref/--cw. Nothing in this module performs I/O.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from shared.errors import EmptyPromptError
from shared.models import MEDIA_NODE_TYPES
from .schemas import (
    CompiledPrompt,
    ContextFile,
    DEFAULT_CHARACTER_WEIGHT,
    DEFAULT_STYLIZATION,
    GenerationParams,
    PromptStats,
    ReferenceImage,
    SPEED_FLAGS,
)

logger = structlog.get_logger()

# Strength given to reference images collected from upstream files
REFERENCE_IMAGE_STRENGTH = 0.75

# (flag, version prefix) pairs the provider rejects.
# --cref only works up to v6.1; v7 and every niji release refuse it.
FLAG_INCOMPATIBILITIES: List[Tuple[str, str]] = [
    ("--cref", "v7"),
    ("--cref", "niji"),
]

_VERSION_RE = re.compile(r"(?<![a-z])(?:(niji)(?:[-_ ]?(\d+))?|v(\d+(?:\.\d+)?))")
_MODIFIER_WITH_VALUE_RE = re.compile(r"^--(\w+)\s+(.+)$")
_BARE_MODIFIER_RE = re.compile(r"^--(\w+)$")

# Modifier keyword -> GenerationParams field
MODIFIER_ALIASES: Dict[str, str] = {
    "s": "stylization",
    "stylize": "stylization",
    "stylization": "stylization",
    "ar": "aspect_ratio",
    "aspect": "aspect_ratio",
    "aspect_ratio": "aspect_ratio",
    "w": "weirdness",
    "weird": "weirdness",
    "weirdness": "weirdness",
    "vary": "variety",
    "variety": "variety",
    "cw": "character_weight",
    "character_weight": "character_weight",
    "speed": "speed",
    "style": "style",
    "mode": "style",
    "model": "model_id",
    "model_id": "model_id",
}


# =============================================================================
# REFERENCE CLASSIFICATION
# =============================================================================

@dataclass
class ReferenceBuckets:
    """Reference images split by how the provider consumes them."""
    image_prompts: List[ReferenceImage] = field(default_factory=list)
    style_references: List[ReferenceImage] = field(default_factory=list)
    character_references: List[ReferenceImage] = field(default_factory=list)


def classify_reference_images(images: Iterable[ReferenceImage]) -> ReferenceBuckets:
    """
    Bucket reference images by purpose.

    - character: "character_reference", anything containing "character" or
      "char", or "omni"
    - style: "style_reference" or anything containing "style"
    - image prompt: everything else, including no purpose at all
    """
    buckets = ReferenceBuckets()
    for image in images:
        purpose = (image.purpose or "").strip().lower()
        if "char" in purpose or purpose == "omni":
            buckets.character_references.append(image)
        elif "style" in purpose:
            buckets.style_references.append(image)
        else:
            buckets.image_prompts.append(image)
    return buckets


# =============================================================================
# MODEL VERSIONS
# =============================================================================

def detect_model_version(model_id: Optional[str]) -> Optional[str]:
    """
    Find the provider version inside a model identifier.

    "midjourney-v7" -> "v7", "mj-v6.1" -> "v6.1", "midjourney-niji-6" -> "niji-6",
    "midjourney-niji" -> "niji" (the provider's current niji release).
    Returns None when the identifier names no version.
    """
    if not model_id:
        return None
    match = _VERSION_RE.search(model_id.lower())
    if not match:
        return None
    niji, niji_number, version_number = match.groups()
    if niji:
        return f"niji-{niji_number}" if niji_number else "niji"
    return f"v{version_number}"


def version_flag(version: str) -> str:
    """"v6.1" -> "--v 6.1", "niji-6" -> "--niji 6", "niji" -> "--niji"."""
    if version == "niji":
        return "--niji"
    if version.startswith("niji-"):
        return f"--niji {version[len('niji-'):]}"
    return f"--v {version.lstrip('v')}"


def is_flag_supported(flag: str, version: Optional[str]) -> bool:
    """False when the (flag, version) combination is listed as incompatible."""
    if not version:
        return True
    for incompatible_flag, version_prefix in FLAG_INCOMPATIBILITIES:
        if flag == incompatible_flag and version.startswith(version_prefix):
            return False
    return True


def _format_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


# =============================================================================
# PROMPT ASSEMBLY
# =============================================================================

def build_flags(
    params: GenerationParams,
    version: Optional[str],
    character_urls: List[str],
) -> Tuple[List[str], int]:
    """
    Translate parameters into flags.

    Returns (flags, dropped_character_references).
    """
    flags: List[str] = []

    if version:
        flags.append(version_flag(version))

    if params.style == "raw":
        flags.append("--style raw")

    ratio = params.aspect_ratio_value
    if ratio:
        flags.append(f"--ar {ratio}")

    if params.stylization is not None and params.stylization != DEFAULT_STYLIZATION:
        flags.append(f"--s {_format_number(params.stylization)}")

    if params.weirdness is not None and params.weirdness > 0:
        flags.append(f"--w {_format_number(params.weirdness)}")

    if params.variety is not None and params.variety > 0:
        flags.append(f"--vary {_format_number(params.variety)}")

    if params.speed in SPEED_FLAGS:
        flags.append(SPEED_FLAGS[params.speed])

    dropped = 0
    if character_urls:
        if is_flag_supported("--cref", version):
            weight = params.character_weight
            if weight is None:
                weight = DEFAULT_CHARACTER_WEIGHT
            flags.append(f"--cref {' '.join(character_urls)}")
            flags.append(f"--cw {_format_number(weight)}")
        else:
            dropped = len(character_urls)
            logger.warning(
                "relay_flag_dropped",
                flag="--cref",
                model_version=version,
                character_references=dropped,
            )

    return flags, dropped


def build_relay_prompt(
    base_prompt: str,
    reference_images: List[ReferenceImage],
    params: GenerationParams,
    mode: str = "photo",
) -> CompiledPrompt:
    """
    Compile the relay prompt.

    Args:
        base_prompt: Node content plus rendered upstream context
        reference_images: Images attached to the request
        params: Generation parameters (model id, aspect ratio, ...)
        mode: Integration mode ("photo" or "video"), recorded in stats

    Raises:
        EmptyPromptError: When text, reference URLs and flags are all empty
    """
    buckets = classify_reference_images(reference_images)
    version = detect_model_version(params.model_id)

    flags, dropped = build_flags(
        params,
        version,
        [image.url for image in buckets.character_references],
    )

    parts = [image.url for image in buckets.image_prompts]
    parts.extend(image.url for image in buckets.style_references)
    parts.append(base_prompt or "")
    if flags:
        parts.append(" ".join(flags))

    prompt_text = " ".join(part.strip() for part in parts if part and part.strip())
    if not prompt_text:
        raise EmptyPromptError("Prompt is empty. Add content, reference images or modifiers before queuing the job.")

    stats = PromptStats(
        prompt_length=len(prompt_text),
        image_prompt_count=len(buckets.image_prompts),
        style_reference_count=len(buckets.style_references),
        character_reference_count=len(buckets.character_references),
        dropped_character_references=dropped,
        model_version=version,
        mode=mode,
    )

    logger.info("relay_prompt_compiled", **stats.model_dump())

    return CompiledPrompt(
        prompt_text=prompt_text,
        flags=flags,
        reference_images=list(reference_images),
        stats=stats,
    )


# =============================================================================
# GRAPH CONTEXT
# =============================================================================

def render_previous_nodes_context(nodes) -> str:
    """
    Render upstream nodes as "Ref <title>:\\n<content>" blocks.

    Image and video nodes are skipped; their content is a URL, not text.
    """
    blocks = []
    for node in nodes:
        if node.type in MEDIA_NODE_TYPES:
            continue
        content = (node.content or "").strip()
        if content:
            blocks.append(f"Ref {node.title or node.node_id}:\n{content}")
    return "\n\n".join(blocks)


def compose_base_prompt(content: Optional[str], previous_nodes) -> str:
    """Node content followed by the rendered upstream context."""
    parts = [(content or "").strip(), render_previous_nodes_context(previous_nodes).strip()]
    return "\n\n".join(part for part in parts if part)


def collect_reference_images(files: Iterable[ContextFile]) -> List[ReferenceImage]:
    """
    Turn upstream files whose content is an http(s) URL into reference images.

    The file name becomes the purpose. Duplicate URLs collapse into one entry
    that keeps the first position and the last file's details.
    """
    unique: Dict[str, ReferenceImage] = {}
    for file in files:
        url = (file.content or "").strip()
        if not url.startswith(("http://", "https://")):
            continue
        unique[url] = ReferenceImage(
            url=url,
            purpose=file.name or "reference",
            strength=REFERENCE_IMAGE_STRENGTH,
            source_node_id=file.source_node_id,
        )
    return list(unique.values())


# =============================================================================
# PROMPT MODIFIERS
# =============================================================================

def extract_prompt_modifiers(meta: Optional[Dict[str, Any]]) -> str:
    """Read `prompt_modifiers` (list of lines or one string) from node meta."""
    raw = (meta or {}).get("prompt_modifiers")
    if isinstance(raw, list):
        return "\n".join(item for item in raw if isinstance(item, str))
    if isinstance(raw, str):
        return raw
    return ""


def parse_modifiers(text: str) -> GenerationParams:
    """
    Parse `--key value` / `--flag` lines into generation parameters.

    "--s 250" -> stylization 250, "--ar landscape" -> aspect ratio,
    "--v 6" -> model v6, "--niji 6" -> model niji-6, "--turbo" -> speed,
    "--raw" -> style raw, "--niji" -> model niji. Unknown keys are ignored.
    """
    values: Dict[str, Any] = {}
    for line in (text or "").splitlines():
        line = line.strip()
        if not line.startswith("--"):
            continue

        match = _MODIFIER_WITH_VALUE_RE.match(line)
        if match:
            key, value = match.group(1).lower(), match.group(2).strip()
            if key == "v":
                values["model_id"] = f"v{value}"
            elif key == "niji":
                values["model_id"] = f"niji-{value}"
            elif key in MODIFIER_ALIASES:
                values[MODIFIER_ALIASES[key]] = value
            continue

        match = _BARE_MODIFIER_RE.match(line)
        if match:
            key = match.group(1).lower()
            if key in SPEED_FLAGS:
                values["speed"] = key
            elif key == "raw":
                values["style"] = "raw"
            elif key == "niji":
                values["model_id"] = "niji"

    return GenerationParams(**values)


# =============================================================================
# MULTIMODAL PROMPT
# =============================================================================

def build_multimodal_prompt(content: Optional[str], previous_nodes) -> str:
    """
    Node content plus `Context from "<title>":` blocks for upstream text nodes.

    Image and video nodes are sent as file parts instead.
    """
    blocks = []
    if content and content.strip():
        blocks.append(content.strip())
    for node in previous_nodes:
        if node.type in MEDIA_NODE_TYPES:
            continue
        body = (node.content or "").strip()
        if body:
            blocks.append(f'Context from "{node.title or node.node_id}":\n{body}')
    return "\n\n".join(blocks).strip()
