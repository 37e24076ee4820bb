"""Logging configuration for flow-memory.

Library loggers stay quiet unless verbose output is requested.
"""

import logging
import os
import sys

NOISY_LOGGERS = ("sentence_transformers", "transformers", "chromadb", "httpx", "httpcore")


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for command-line use.

    Args:
        verbose: If True, log DEBUG output from flow_memory to stderr and leave
            third-party loggers alone. If False, only warnings are shown and
            noisy libraries are silenced.
    """
    root_logger = logging.getLogger("flow_memory")

    if not any(isinstance(h, logging.StreamHandler) for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S")
        )
        root_logger.addHandler(handler)

    if verbose:
        root_logger.setLevel(logging.DEBUG)
        return

    root_logger.setLevel(logging.WARNING)
    os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)
