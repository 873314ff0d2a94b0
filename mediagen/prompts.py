"""
Prompt templates for the multimodal generation node.

System instructions are assembled from these segments:

    <base prompt>
    <SYSTEM_REQUIREMENTS>
    <schema instructions, when a response schema is requested>
    <STRICT_FORMAT_SUFFIX, when a response schema is requested>
"""

# =============================================================================
# BASE PROMPTS
# =============================================================================

DEFAULT_IMAGE_SYSTEM_PROMPT = """You are an image generation assistant inside a visual workflow editor.
Create the image described by the user. Use the attached reference images and context blocks as guidance for subject, composition and style.
When the request is ambiguous, prefer a clean, well-lit composition over adding unrequested elements."""

DEFAULT_TEXT_SYSTEM_PROMPT = """You are a helpful assistant inside a visual workflow editor.
Answer using the user's request and the context blocks provided with it. Be concise and concrete."""

SYSTEM_REQUIREMENTS = "Always follow the system requirements and respond in the language requested by the user."

STRICT_FORMAT_SUFFIX = "The response must strictly conform to the specified format without explanations or auxiliary text."


# =============================================================================
# RESPONSE SCHEMA INSTRUCTIONS
# =============================================================================

TEXT_RESPONSE_INSTRUCTIONS = """Return a JSON object of the form {"response": "..."} with the final answer.
The response field must contain the completed answer as plain text without Markdown, HTML, or additional fields.
Do not add comments, explanations, or extra properties."""

PLAN_SCHEMA_INSTRUCTIONS = """Return a JSON object strictly conforming to PLAN_SCHEMA with the fields overview, phases, and nodes.
overview must include goal, target_audience, tone, and duration_sec (an integer from 5 to 180 seconds).
phases is an array of objects with name and an array of steps (at least one step).
nodes is an array of at least three objects. Each object contains node_id, type, title, description, and an outputs array.
The type field only accepts the values: text, ai, parser, python, image_gen, audio_gen, video_gen.
The outputs field lists the artifacts to be created (e.g., ["structured_json"]).
Do not add extra fields, do not use Markdown, and do not include explanatory text outside the JSON."""


# =============================================================================
# CONTEXT BLOCKS
# =============================================================================

REFERENCE_IMAGE_TEMPLATE = "Reference image: {url}"

REFERENCE_FILE_TEMPLATE = "Reference from {name}:\n{content}"
