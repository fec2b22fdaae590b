"""Exception utilities for narrow exception catching.

This module provides exception type tuples for use in narrow exception handlers,
replacing broad `except Exception:` with specific exception types. This allows
programming errors (NameError, AttributeError, etc.) to bubble up immediately
while still handling expected operational errors gracefully.

Usage:
    from runner_sync.utils.exceptions import PARSE_ERRORS

    try:
        metadata = RemoteMetadata.model_validate_json(raw)
    except PARSE_ERRORS as e:
        logger.debug(f"Unreadable metadata: {e}")
"""

from __future__ import annotations

import json
import logging

from pydantic import ValidationError as PydanticValidationError

from runner_sync.utils.async_utils import SubprocessError

# =============================================================================
# Exception Type Tuples
# =============================================================================

# JSON/parsing exceptions for data deserialization
# Use for: JSON decoding, status dumps, metadata records
PARSE_ERRORS: tuple[type[BaseException], ...] = (
    json.JSONDecodeError,      # Malformed JSON
    PydanticValidationError,   # Wire model rejected the payload
    KeyError,                  # Missing expected key
    TypeError,                 # Wrong type in data structure
    ValueError,                # Invalid value format
)

# File system exceptions for disk operations
FS_ERRORS: tuple[type[BaseException], ...] = (
    OSError,           # File not found, permission denied, etc.
    PermissionError,   # Access denied
    FileNotFoundError, # Missing file
)

# Process/subprocess exceptions
# Use for: External command execution, process management
PROCESS_ERRORS: tuple[type[BaseException], ...] = (
    OSError,                   # Process-related OS errors
    PermissionError,           # Permission to execute
    FileNotFoundError,         # Command not found
    SubprocessError,           # Non-zero exit / timeout from async_subprocess_run
)


def log_and_continue(
    e: BaseException,
    context: str,
    logger_instance: logging.Logger,
    level: int = logging.WARNING,
) -> None:
    """Log exception with context, allowing the caller to continue.

    Args:
        e: The exception that was caught
        context: Short description of the operation (e.g., "probe")
        logger_instance: Logger to use for logging
        level: Logging level (default: WARNING)
    """
    logger_instance.log(
        level,
        f"[{context}] Caught {type(e).__name__}: {e}",
    )
