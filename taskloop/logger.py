"""Logging configuration for taskloop."""

import logging
from pathlib import Path

AUDIT_LOGGER = "taskloop.audit"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    log_file: str = "log/taskloop.log",
    level: int = logging.INFO,
    console: bool = True,
    audit_file: str | None = None,
) -> None:
    """Setup logging to file and optionally stderr.

    Permission classifications and approval decisions (``taskloop.audit``)
    also go to ``audit_file`` when one is given, and are always kept at INFO
    so a quieter main log does not drop them.
    """

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: list[logging.Handler] = [
        logging.FileHandler(log_path, mode='a', encoding='utf-8'),
    ]

    if console:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True
    )

    # Suppress noisy third-party logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logging.getLogger("taskloop").setLevel(level)
    _setup_audit(audit_file)

    logging.info("="*60)
    logging.info(f"taskloop logging started. Writing to {log_path.absolute()}")
    if audit_file:
        logging.info(f"Audit trail: {Path(audit_file).absolute()}")
    logging.info("="*60)


def _setup_audit(audit_file: str | None) -> None:
    audit = logging.getLogger(AUDIT_LOGGER)
    audit.setLevel(logging.INFO)
    # Repeated setup (serve after a config reload) must not stack handlers
    for handler in list(audit.handlers):
        audit.removeHandler(handler)
        handler.close()
    if not audit_file:
        return

    audit_path = Path(audit_file)
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(audit_path, mode='a', encoding='utf-8')
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s", datefmt=DATE_FORMAT))
    audit.addHandler(handler)
