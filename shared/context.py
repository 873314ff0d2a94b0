"""
Execution context handed to workflow node functions.

Node functions take `(ctx, params)`. A workflow engine normally supplies ctx;
NodeContext is the in-process implementation used by scripts and tests.
"""
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import structlog

logger = structlog.get_logger()


@dataclass
class NodeContext:
    """
    Minimal ctx surface: secrets, config, and reporting.

    Secrets fall back to environment variables when `use_environment` is set,
    which mirrors how a team .env is exposed to nodes.
    """
    secrets: Dict[str, str] = field(default_factory=dict)
    config: Dict[str, Any] = field(default_factory=dict)
    use_environment: bool = False

    inputs: List[dict] = field(default_factory=list)
    outputs: List[dict] = field(default_factory=list)
    progress: List[Tuple[int, str]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def get_secret(self, name: str) -> Optional[str]:
        value = self.secrets.get(name)
        if value is None and self.use_environment:
            value = os.environ.get(name)
        return value

    def get_config(self, name: str) -> Any:
        return self.config.get(name)

    def report_input(self, data: dict) -> None:
        self.inputs.append(data)

    def report_output(self, data: dict) -> None:
        self.outputs.append(data)

    def report_progress(self, percent: int, message: str = "") -> None:
        self.progress.append((percent, message))
        logger.debug("node_progress", percent=percent, message=message)

    def warning(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning("node_warning", message=message)

    @property
    def last_output(self) -> Optional[dict]:
        return self.outputs[-1] if self.outputs else None
