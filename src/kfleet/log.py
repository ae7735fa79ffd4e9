"""Logging setup and the operation audit trail."""

import getpass
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler


AUDIT_LOGGER = "kfleet.audit"


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> logging.Logger:
    """Configure the `kfleet` logger hierarchy.

    Console output goes through rich on stderr (INFO, or DEBUG when verbose).
    When a log file is given it receives everything at DEBUG level in a
    plain, grep-friendly format.

    Args:
        verbose: Emit debug messages on the console.
        log_file: Optional path for the full debug log.

    Returns:
        logging.Logger: The configured package root logger.
    """
    logger = logging.getLogger("kfleet")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        markup=False,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

    return logger


def _invoking_user() -> str:
    # Reason: under sudo the audit entry should name the human, not root.
    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        return sudo_user
    try:
        return getpass.getuser()
    except OSError:
        return "unknown"


def audit(operation: str, outcome: str, **details: object) -> str:
    """Write one audit line for an operation milestone.

    Args:
        operation: Operation kind, e.g. "deploy" or "upgrade".
        outcome: "started", "completed" or "failed".
        **details: Extra key/value pairs appended to the entry.

    Returns:
        str: The formatted audit entry.
    """
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S%z")
    entry = f"AUDIT: ts={ts} op={operation} outcome={outcome} user={_invoking_user()}"
    if details:
        detail_str = " ".join(f"{k}={v}" for k, v in details.items())
        entry = f"{entry} details={detail_str}"
    logging.getLogger(AUDIT_LOGGER).info(entry)
    return entry
