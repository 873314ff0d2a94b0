"""
Shared infrastructure across workflows: database, storage, credentials.
"""
from .context import NodeContext
from .credentials import (
    CredentialResolver,
    DatabaseCredentialResolver,
    IntegrationConfig,
    SecretsCredentialResolver,
)
from .errors import (
    ConfigurationError,
    EmptyPromptError,
    GenerationError,
    MissingJobIdError,
    NodeNotFoundError,
    ProtocolError,
    SubmissionError,
    TransportError,
)

__all__ = [
    "NodeContext",
    "CredentialResolver",
    "DatabaseCredentialResolver",
    "IntegrationConfig",
    "SecretsCredentialResolver",
    "ConfigurationError",
    "EmptyPromptError",
    "GenerationError",
    "MissingJobIdError",
    "NodeNotFoundError",
    "ProtocolError",
    "SubmissionError",
    "TransportError",
]
