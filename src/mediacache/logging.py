"""
Structured logging for the media cache.

Provides:
- Context variables for asset_id, stage and batch_id (contextvars)
- JSONFormatter writing JSON Lines to an optional log file
- ContextRichHandler for console output with a context prefix
- ContextLogger, which accepts keyword fields on every call
- setup_logging() / get_logger()
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.text import Text

ROOT_LOGGER = "mediacache"

_asset_id_var: ContextVar[str | None] = ContextVar("asset_id", default=None)
_stage_var: ContextVar[str | None] = ContextVar("stage", default=None)
_batch_id_var: ContextVar[str | None] = ContextVar("batch_id", default=None)


def current_context() -> dict[str, str]:
    """Return the non-empty logging context for the running task."""
    ctx: dict[str, str] = {}
    for key, var in (
        ("batch_id", _batch_id_var),
        ("asset_id", _asset_id_var),
        ("stage", _stage_var),
    ):
        value = var.get()
        if value:
            ctx[key] = value
    return ctx


@contextmanager
def log_context(
    asset_id: str | None = None,
    stage: str | None = None,
    batch_id: str | None = None,
) -> Generator[None, None, None]:
    """Scope logging context to a block.

    Args:
        asset_id: Asset being processed.
        stage: Preload stage name.
        batch_id: Identifier of the surrounding preload batch.
    """
    tokens = []
    if asset_id is not None:
        tokens.append((_asset_id_var, _asset_id_var.set(asset_id)))
    if stage is not None:
        tokens.append((_stage_var, _stage_var.set(stage)))
    if batch_id is not None:
        tokens.append((_batch_id_var, _batch_id_var.set(batch_id)))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with context and extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_obj.update(current_context())

        if hasattr(record, "fields") and record.fields:
            log_obj["fields"] = record.fields

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_obj, default=str)


class ContextRichHandler(RichHandler):
    """Rich handler that prefixes the level with batch/asset/stage."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)
        ctx = current_context()

        parts: list[str] = []
        if "batch_id" in ctx:
            parts.append(f"[dim]{ctx['batch_id'][-8:]}[/dim]")
        if "asset_id" in ctx:
            parts.append(f"[magenta]{ctx['asset_id']}[/magenta]")
        if "stage" in ctx:
            parts.append(f"[cyan]{ctx['stage']}[/cyan]")

        if parts:
            return Text.from_markup(f"{level_text} {' '.join(parts)}")
        return level_text

    def render_message(self, record: logging.LogRecord, message: str) -> Any:
        fields = getattr(record, "fields", None)
        if fields:
            rendered = " ".join(f"{k}={v}" for k, v in fields.items())
            message = f"{message} [dim]{escape(rendered)}[/dim]"
        return super().render_message(record, message)


class ContextLogger:
    """Logger wrapper that turns keyword arguments into structured fields.

    ``logger.info("Stored asset", asset_id="a_mp4", size=1024)``
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(
        self,
        level: int,
        msg: str,
        *args: Any,
        exc_info: bool = False,
        **fields: Any,
    ) -> None:
        if not self._logger.isEnabledFor(level):
            return
        self._logger.log(level, msg, *args, exc_info=exc_info, extra={"fields": fields})

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, exc_info: bool = False, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, *args, exc_info=exc_info, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log at ERROR with the active traceback."""
        self._log(logging.ERROR, msg, *args, exc_info=True, **kwargs)


_console: Console | None = None
_setup_done: bool = False


def get_console() -> Console:
    """Get the shared stderr console."""
    global _console
    if _console is None:
        _console = Console(stderr=True)
    return _console


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the ``mediacache`` logger tree.

    Args:
        log_level: Logging level name.
        log_file: Optional JSON Lines file; receives DEBUG and above.
        console_output: Whether to attach the rich console handler.
    """
    global _setup_done

    root_logger = logging.getLogger(ROOT_LOGGER)
    level = getattr(logging, log_level.upper())
    root_logger.setLevel(logging.DEBUG if log_file else level)
    root_logger.handlers.clear()

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)

    if console_output:
        rich_handler = ContextRichHandler(
            console=get_console(),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=True,
        )
        rich_handler.setLevel(level)
        root_logger.addHandler(rich_handler)

    root_logger.propagate = False

    for noisy_logger in ("httpx", "httpcore", "aiosqlite", "asyncio"):
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    _setup_done = True


def get_logger(name: str) -> ContextLogger:
    """Get a context-aware logger under the ``mediacache`` namespace."""
    if not _setup_done:
        setup_logging()

    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"

    return ContextLogger(logging.getLogger(name))
