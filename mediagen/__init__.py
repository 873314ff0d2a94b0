"""
Node functions for the generative media pipeline.

This package contains the workflow node implementations and the pieces they
are built from (prompt compiler, provider clients, folder and artifact
persistence).
"""

from .pipeline import (
    # Relay (asynchronous jobs)
    compile_relay_prompt,
    queue_relay_generation,
    collect_relay_results,
    request_relay_upscale,
    # Multimodal (synchronous)
    run_multimodal_generation,
)

from .prompt_compiler import (
    build_relay_prompt,
    build_multimodal_prompt,
    parse_modifiers,
)

from .relay import (
    submit_job,
    poll_job,
    submit_upscale,
    is_terminal,
)

from .multimodal import (
    generate_content,
)

from .folders import (
    resolve_output_folder,
)

from .artifacts import (
    persist_artifacts,
)
