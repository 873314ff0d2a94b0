"""
Pydantic schemas for generation values and workflow node inputs/outputs.

Value types (ReferenceImage, CompiledPrompt, Job, Artifact, ...) flow between
the compiler, the provider clients and the persistence layer. Node Input /
Output models type the `(ctx, params)` workflow node functions.
"""
import re
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator


# =============================================================================
# PROMPT PARAMETERS
# =============================================================================

# Named aspect ratios understood by the relay
ASPECT_RATIOS: Dict[str, str] = {
    "portrait": "2:3",
    "square": "1:1",
    "landscape": "3:2",
}

# Speed -> flag; exactly one is emitted
SPEED_FLAGS: Dict[str, str] = {
    "turbo": "--turbo",
    "fast": "--fast",
    "relax": "--relax",
}

DEFAULT_STYLIZATION = 100
DEFAULT_CHARACTER_WEIGHT = 80

_RATIO_RE = re.compile(r"^\d+:\d+$")

Number = Union[int, float]


def coerce_number(value: Any) -> Optional[Number]:
    """Accept ints, floats and numeric strings ("250", "12.5", "45%")."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        cleaned = value.strip().rstrip("%").strip()
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
        return int(number) if number.is_integer() else number
    return None


class ReferenceImage(BaseModel):
    """An image URL attached to a generation request, tagged with its purpose."""
    url: str
    purpose: Optional[str] = None  # character_reference, style_reference, image_prompt, ...
    strength: Optional[float] = None
    source_node_id: Optional[str] = None


class ContextFile(BaseModel):
    """
    A file handed to a generation node by an upstream node.

    `content` is a URL, inline base64, or text depending on `type`
    (image/url, image/base64, text/*).
    """
    name: str = ""
    type: str = "image/url"
    content: str = ""
    source_node_id: Optional[str] = None


class GenerationParams(BaseModel):
    """User-facing generation parameters for the relay."""
    model_id: Optional[str] = None
    aspect_ratio: Optional[str] = None  # portrait | square | landscape | "W:H"
    stylization: Optional[Number] = None
    weirdness: Optional[Number] = None
    variety: Optional[Number] = None
    speed: Optional[str] = None  # turbo | fast | relax
    character_weight: Optional[Number] = None
    style: Optional[str] = None  # "raw" adds --style raw

    model_config = {"protected_namespaces": ()}

    @field_validator("stylization", "weirdness", "variety", "character_weight", mode="before")
    @classmethod
    def coerce_numeric(cls, v):
        """Modifier lines arrive as strings; unparseable values are dropped."""
        return coerce_number(v)

    @field_validator("aspect_ratio", "speed", "style", mode="before")
    @classmethod
    def normalize_keyword(cls, v):
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @property
    def aspect_ratio_value(self) -> Optional[str]:
        """Ratio to send with --ar, or None when the value is unknown."""
        if not self.aspect_ratio:
            return None
        if self.aspect_ratio in ASPECT_RATIOS:
            return ASPECT_RATIOS[self.aspect_ratio]
        if _RATIO_RE.match(self.aspect_ratio):
            return self.aspect_ratio
        return None

    def merged_with(self, overrides: Optional["GenerationParams"]) -> "GenerationParams":
        """Return a copy where every field set on `overrides` wins."""
        if overrides is None:
            return self
        return self.model_copy(update=overrides.model_dump(exclude_none=True))


class PromptStats(BaseModel):
    """Counts logged with every compiled prompt."""
    prompt_length: int = 0
    image_prompt_count: int = 0
    style_reference_count: int = 0
    character_reference_count: int = 0
    dropped_character_references: int = 0
    model_version: Optional[str] = None
    mode: str = "photo"


class CompiledPrompt(BaseModel):
    """Provider-native prompt text plus what went into it."""
    prompt_text: str
    flags: List[str] = Field(default_factory=list)
    reference_images: List[ReferenceImage] = Field(default_factory=list)
    stats: PromptStats = Field(default_factory=PromptStats)

    model_config = {"frozen": True}


# =============================================================================
# JOBS AND ARTIFACTS
# =============================================================================

class Artifact(BaseModel):
    """
    One generated output.

    `url` is the artifact's identity: the provider URL, or "inline:<sha256>"
    for base64 and data: payloads (see artifacts.artifact_identity).
    """
    url: str
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    storage_path: Optional[str] = None  # Relative to the project directory
    local_url: Optional[str] = None
    asset_id: Optional[str] = None
    job_id: Optional[str] = None
    source: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: Optional[str] = None
    base64_data: Optional[str] = Field(default=None, exclude=True)  # Never persisted

    def to_meta(self) -> Dict[str, Any]:
        """Record stored in node metadata."""
        return self.model_dump(exclude_none=True)


class Job(BaseModel):
    """Handle returned by a submission."""
    job_id: str
    status: str
    provider_id: str
    progress: Optional[float] = None
    code: Optional[int] = None
    description: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)


class JobPollResult(BaseModel):
    """
    One status check of a job.

    `status` is whatever the relay reports ("completed", "failed",
    "in_progress", ...); callers decide which values are terminal.
    """
    job_id: str
    status: str = "unknown"
    progress: Optional[float] = None
    artifacts: List[Artifact] = Field(default_factory=list)
    error: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)


class FolderNode(BaseModel):
    """The folder node that collects a source node's outputs."""
    node_id: str
    source_node_id: str
    title: str = ""
    artifacts: List[Artifact] = Field(default_factory=list)
    created: bool = False


class PersistResult(BaseModel):
    """Outcome of one persist_artifacts call."""
    folder_node_id: str
    artifacts: List[Artifact] = Field(default_factory=list)  # Full list after the merge
    added: List[Artifact] = Field(default_factory=list)
    skipped_existing: int = 0
    failed_urls: List[str] = Field(default_factory=list)


class MultimodalGeneration(BaseModel):
    """Result of one generateContent call."""
    job_id: str
    model: str
    artifacts: List[Artifact] = Field(default_factory=list)
    text_outputs: List[str] = Field(default_factory=list)
    candidate_count: int = 0
    block_reason: Optional[str] = None  # promptFeedback.blockReason when the prompt was refused
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)


# =============================================================================
# STRUCTURED RESPONSES (multimodal provider)
# =============================================================================

class TextResponse(BaseModel):
    """TEXT_RESPONSE: a single plain-text answer."""
    response: str


class PlanOverview(BaseModel):
    goal: str
    target_audience: str
    tone: str
    duration_sec: int = Field(ge=5, le=180)


class PlanPhase(BaseModel):
    name: str
    steps: List[str] = Field(min_length=1)


class PlanNode(BaseModel):
    node_id: str
    type: Literal["text", "ai", "parser", "python", "image_gen", "audio_gen", "video_gen"]
    title: str
    description: str
    outputs: List[str] = Field(min_length=1)


class PlanResponse(BaseModel):
    """PLAN_SCHEMA: a workflow plan with overview, phases and nodes."""
    overview: PlanOverview
    phases: List[PlanPhase] = Field(min_length=1)
    nodes: List[PlanNode] = Field(min_length=3)


# =============================================================================
# NODE INPUTS / OUTPUTS
# =============================================================================

class CompileRelayPromptInput(BaseModel):
    """Input for compile_relay_prompt node."""
    project_id: str
    node_id: str
    params: Optional[GenerationParams] = None  # Overrides stored modifiers
    reference_images: List[ReferenceImage] = Field(default_factory=list)
    mode: Optional[str] = None  # photo | video; defaults to the integration's mode


class CompileRelayPromptOutput(BaseModel):
    """Output from compile_relay_prompt node."""
    prompt_text: str
    flags: List[str] = Field(default_factory=list)
    reference_image_count: int = 0
    stats: PromptStats = Field(default_factory=PromptStats)


class QueueRelayGenerationInput(BaseModel):
    """Input for queue_relay_generation node."""
    project_id: str
    node_id: str
    params: Optional[GenerationParams] = None
    reference_images: List[ReferenceImage] = Field(default_factory=list)


class QueueRelayGenerationOutput(BaseModel):
    """Output from queue_relay_generation node."""
    job_id: str
    status: str
    code: Optional[int] = None
    description: Optional[str] = None
    prompt_text: str = ""
    folder_node_id: Optional[str] = None


class CollectRelayResultsInput(BaseModel):
    """Input for collect_relay_results node."""
    project_id: str
    node_id: str
    job_id: Optional[str] = None  # Defaults to the job stamped on the node


class CollectRelayResultsOutput(BaseModel):
    """Output from collect_relay_results node."""
    job_id: str
    status: str
    progress: Optional[float] = None
    error: Optional[str] = None
    folder_node_id: Optional[str] = None
    artifacts_added: int = 0
    artifact_count: int = 0
    failed_urls: List[str] = Field(default_factory=list)


class RequestRelayUpscaleInput(BaseModel):
    """Input for request_relay_upscale node."""
    project_id: str
    node_id: str
    index: int = Field(ge=1, le=4)  # Variant in the 2x2 grid
    task_id: Optional[str] = None  # Defaults to the job stamped on the node


class RequestRelayUpscaleOutput(BaseModel):
    """Output from request_relay_upscale node."""
    job_id: str
    status: str
    parent_job_id: str
    index: int


class RunMultimodalGenerationInput(BaseModel):
    """Input for run_multimodal_generation node."""
    project_id: str
    node_id: str
    system_prompt: Optional[str] = None
    schema_ref: Optional[str] = None  # TEXT_RESPONSE | PLAN_SCHEMA
    files: List[ContextFile] = Field(default_factory=list)


class RunMultimodalGenerationOutput(BaseModel):
    """Output from run_multimodal_generation node."""
    job_id: str
    status: str
    model: str
    folder_node_id: Optional[str] = None
    artifacts_added: int = 0
    artifact_count: int = 0
    text_outputs: List[str] = Field(default_factory=list)
