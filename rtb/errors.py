"""
Error types and error logging utilities for rtb.

Structural import errors and configuration errors are fatal for the
operation that raised them. Provider errors are transient and retried at
the batch level by the embedding store.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class RtbError(Exception):
    """Base class for rtb errors."""


class ImportValidationError(RtbError):
    """
    An export violates a structural invariant.

    Raised before the offending batch commits. ``block_id`` names the
    offending block (or page title, for page-level problems), and
    ``pages_committed`` counts the pages already durably imported by
    earlier batches of the same run.
    """

    def __init__(self, message: str, *, block_id: Optional[str] = None,
                 pages_committed: int = 0):
        super().__init__(message)
        self.block_id = block_id
        self.pages_committed = pages_committed


class ProviderError(RtbError):
    """Transient failure from an external provider (network, rate limit, bad response)."""


class ConfigurationError(RtbError):
    """Fatal misconfiguration: missing credentials, unknown provider, invalid config."""


class EmbeddingDimensionError(ConfigurationError):
    """Embedding vectors do not match the corpus' recorded dimensionality or model."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting RTB_HOME."""
    home = os.environ.get("RTB_HOME")
    if home:
        return Path(home) / "rtb-errors.log"
    return Path.home() / ".rtb" / "rtb-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log; don't crash over it
    return log_path
