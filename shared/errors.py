"""
Error taxonomy for generation jobs.

- ConfigurationError: integration missing, disabled, or incomplete
- TransportError: the request never produced a usable HTTP answer (non-2xx,
  timeout, connection failure)
- ProtocolError: the provider answered, but the body is not what the API promises

Provider rejections (banned prompt, full queue) are NOT exceptions - they come
back as ordinary job statuses so callers can show them to the user.
"""
from typing import Optional


class GenerationError(Exception):
    """Base class for everything raised by the generation pipeline."""


class ConfigurationError(GenerationError):
    """Integration is not configured, disabled, or missing credentials."""


class TransportError(GenerationError):
    """Non-2xx response, timeout, or network failure talking to a provider."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class SubmissionError(TransportError):
    """The relay rejected a job submission at the HTTP level."""


class ProtocolError(GenerationError):
    """Provider response parsed but violates the expected shape."""

    def __init__(self, message: str, payload: Optional[object] = None):
        super().__init__(message)
        self.payload = payload


class MissingJobIdError(ProtocolError):
    """Submission response carried no job identifier."""


class EmptyPromptError(GenerationError, ValueError):
    """Nothing to send: no content, no reference images, no flags."""


class NodeNotFoundError(GenerationError, LookupError):
    """A graph node the operation depends on does not exist."""

    def __init__(self, project_id: str, node_id: str):
        super().__init__(f"Node {node_id} not found in project {project_id}")
        self.project_id = project_id
        self.node_id = node_id
