"""Logging setup for the trackchar CLI."""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
HANDLER_NAME = "trackchar-stderr"

_NOISY_LOGGERS = ("sentence_transformers", "transformers", "torch", "urllib3", "filelock")


def configure_logging(verbose: bool = False) -> None:
    """Send logs to stderr; keep model libraries quiet unless verbose."""
    root = logging.getLogger()
    for existing in list(root.handlers):
        if existing.get_name() == HANDLER_NAME:
            root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    root.addHandler(handler)

    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger("trackchar").setLevel(logging.DEBUG if verbose else logging.INFO)

    if not verbose:
        os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
        os.environ.setdefault("TRANSFORMERS_VERBOSITY", "error")
        os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)
