"""
Logging sinks for catalogsync runs.

Every run logs to three places, all with secrets masked and UTC timestamps:
  stderr                                   console level (INFO by default)
  <base_dir>/app.log                       rotated at midnight, 14 kept
  <base_dir>/YYYY-MM-DD/<action>_<run_id>.log   one file per run

Library modules log through ``cs.*`` loggers (``cs.http``, ``cs.executor``,
``cs.reconciler``) and reach the console and app.log through propagation.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

LOG_FORMAT = (
    "%(asctime)s | %(levelname)-8s | %(name)s | "
    "run=%(run_id)s action=%(action)s catalog_type=%(catalog_type)s | "
    "%(message)s"
)
CONTEXT_FIELDS = ("run_id", "action", "catalog_type")
REDACTED = "***REDACTED***"


class MaskSecretsFilter(logging.Filter):
    """Redact bearer tokens, API keys and passwords in the message and its % args."""

    _patterns = [
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(\bBearer\s+)([A-Za-z0-9._-]{8,})", re.IGNORECASE),
        re.compile(r"(api[_-]?key\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(password\s*[=:]\s*)([^,\s]+)", re.IGNORECASE),
        re.compile(r"(\btoken\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @classmethod
    def mask(cls, text: str) -> str:
        for pat in cls._patterns:
            text = pat.sub(r"\1" + REDACTED, text)
        return text

    def _mask_arg(self, value: Any) -> Any:
        return self.mask(value) if isinstance(value, str) else value

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, dict):
            record.args = {k: self.mask(str(v)) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._mask_arg(a) for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self.mask(record.msg)
        return True


class _ContextDefaults(logging.Filter):
    """Records from plain ``cs.*`` loggers carry no run context; show '-' instead."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, "-")
        return True


def _formatter() -> logging.Formatter:
    f = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%SZ")
    f.converter = time.gmtime  # type: ignore[attr-defined]
    return f


def _prepared(handler: logging.Handler, level: str, default: int) -> logging.Handler:
    handler.setLevel(getattr(logging, str(level).upper(), default))
    handler.setFormatter(_formatter())
    handler.addFilter(MaskSecretsFilter())
    handler.addFilter(_ContextDefaults())
    return handler


def _replace_handlers(
    logger: logging.Logger,
    owns: Callable[[logging.Handler], bool],
    is_current: Callable[[logging.Handler], bool],
    make: Callable[[], logging.Handler],
) -> None:
    """Drop handlers of one kind that are stale, then add one if none is current.

    Tests chdir and swap stdio between runs, so a handler opened earlier can
    point at a closed stream or another directory.
    """
    for h in [h for h in logger.handlers if owns(h) and not is_current(h)]:
        logger.removeHandler(h)
        h.close()
    if not any(owns(h) for h in logger.handlers):
        logger.addHandler(make())


def _console_sinks(base: logging.Logger, console_level: str) -> None:
    # exact type: FileHandler subclasses StreamHandler
    _replace_handlers(
        base,
        owns=lambda h: type(h) is logging.StreamHandler,
        is_current=lambda h: False,
        make=lambda: _prepared(logging.StreamHandler(stream=sys.stderr), console_level, logging.INFO),
    )


def _app_log_sink(base: logging.Logger, base_dir: str, file_level: str) -> None:
    os.makedirs(base_dir, exist_ok=True)
    app_log = os.path.abspath(os.path.join(base_dir, "app.log"))
    _replace_handlers(
        base,
        owns=lambda h: isinstance(h, logging.handlers.TimedRotatingFileHandler),
        is_current=lambda h: os.path.abspath(h.baseFilename) == app_log,
        make=lambda: _prepared(
            logging.handlers.TimedRotatingFileHandler(
                app_log, when="midnight", backupCount=14, encoding="utf-8", utc=True
            ),
            file_level,
            logging.DEBUG,
        ),
    )


def _run_log_path(base_dir: str, action: str, run_id: str) -> Path:
    dated = Path(base_dir) / datetime.now(timezone.utc).strftime("%Y-%m-%d")
    dated.mkdir(parents=True, exist_ok=True)
    return dated / f"{action}_{run_id}.log"


def build_logger(
    *,
    name: str = "cs",
    run_id: str,
    action: str,
    base_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    extra: Optional[Dict[str, Any]] = None,
) -> logging.LoggerAdapter:
    """Wire the sinks and return an adapter stamped with the run context.

    The base logger ``<name>`` owns the console and app.log; the child
    ``<name>.<action>.<run_id>`` owns the per-run file and propagates up.
    """
    base = logging.getLogger(name)
    base.setLevel(logging.DEBUG)
    _console_sinks(base, console_level)
    _app_log_sink(base, base_dir, file_level)

    run_logger = logging.getLogger(f"{name}.{action}.{run_id}")
    run_logger.setLevel(logging.DEBUG)
    run_logger.propagate = True
    run_handlers: List[logging.Handler] = [h for h in run_logger.handlers if isinstance(h, logging.FileHandler)]
    if not run_handlers:
        run_logger.addHandler(
            _prepared(
                logging.FileHandler(_run_log_path(base_dir, action, run_id), encoding="utf-8"),
                file_level,
                logging.DEBUG,
            )
        )

    context: Dict[str, Any] = {"catalog_type": None}
    context.update(extra or {})
    context.update(run_id=run_id, action=action)
    adapter = logging.LoggerAdapter(run_logger, context)
    adapter.debug("Logger initialised")
    return adapter
