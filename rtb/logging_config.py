"""
Logging configuration for rtb.

Quiet by default: HTTP client libraries log every request at INFO, which
drowns out import and embedding progress.
"""

import logging
import sys
import warnings

# Third-party loggers that are noisy at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic", "urllib3")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging for normal CLI use.

    rtb's own progress messages (import batches, embedding batches,
    retries) are shown at INFO on stderr; library chatter is limited to
    errors.

    Args:
        quiet: If True, suppress library output and warnings.
    """
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        root_logger.addHandler(handler)
    root_logger.setLevel(logging.WARNING)
    logging.getLogger("rtb").setLevel(logging.INFO)

    if quiet:
        warnings.filterwarnings("ignore")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    # Re-enable warnings
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Replace any plain handler from quiet mode with a timestamped one
    for h in list(root_logger.handlers):
        if isinstance(h, logging.StreamHandler) and h.stream == sys.stderr:
            root_logger.removeHandler(h)
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S"
    ))
    root_logger.addHandler(handler)

    for name in ("rtb",) + _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)
