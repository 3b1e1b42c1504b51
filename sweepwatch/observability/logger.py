"""Structured logging with structlog.

Signing credentials are never written to a log sink: the redaction
processor masks them at the top level and inside nested mappings
(e.g. a wallet configuration dumped as a whole).
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Any

import structlog


_CONFIGURED = False
_HANDLERS: list[logging.Handler] = []

_REDACTED = "***REDACTED***"

_SENSITIVE_KEYS = frozenset({
    "private_key", "credentials", "secret", "password",
    "mnemonic", "seed", "seed_phrase", "signing_key",
})


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: (_REDACTED if str(k).lower() in _SENSITIVE_KEYS else _scrub(v))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(v) for v in value)
    return value


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Mask sensitive fields in log events."""
    for key in list(event_dict.keys()):
        if key.lower() in _SENSITIVE_KEYS:
            event_dict[key] = _REDACTED
        elif isinstance(event_dict[key], (dict, list, tuple)):
            event_dict[key] = _scrub(event_dict[key])
    return event_dict


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | None = None,
    force: bool = False,
) -> None:
    """Configure structlog on top of the stdlib root logger.

    Module-level ``get_logger`` calls configure from the environment on
    import; pass ``force=True`` to replace that setup with loaded config.
    """
    global _CONFIGURED
    if _CONFIGURED and not force:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(log_level)
    for old in _HANDLERS:
        root.removeHandler(old)
        old.close()
    _HANDLERS.clear()

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(log_level)
    root.addHandler(console)
    _HANDLERS.append(console)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(log_path))
        fh.setLevel(log_level)
        root.addHandler(fh)
        _HANDLERS.append(fh)

    # web3 / urllib3 are chatty at DEBUG
    for noisy in ("web3", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    )
    for handler in _HANDLERS:
        handler.setFormatter(formatter)

    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("SWEEPWATCH_LOG_LEVEL", "INFO"),
            fmt=os.environ.get("SWEEPWATCH_LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)
