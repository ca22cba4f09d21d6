"""Structured logging: console lines plus a JSON-lines event log per pipeline run."""

import contextvars
import json
import logging
import os
import sys
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from src.core.config import config


def _format_duration(seconds: float) -> str:
    if seconds < 0:
        return "0s"
    if seconds >= 60:
        m = int(seconds // 60)
        s = seconds % 60
        if s < 0.05:
            return f"{m}m"
        return f"{m}m {s:.0f}s" if s >= 1 else f"{m}m {s:.1f}s"
    if seconds >= 0.05:
        return f"{seconds:.1f}s"
    if seconds > 0:
        return "<0.1s"
    return "0s"


def _short_reason(reason: str | None, max_len: int = 80) -> str:
    """One-line short reason for console (failed stage / fallback)."""
    if not reason or not reason.strip():
        return ""
    s = reason.strip().replace("\n", " ").strip()
    return s[:max_len] + "..." if len(s) > max_len else s


_REQUEST_SEP = "  " + "─" * 42 + "  "
_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "rag_request_id", default=None
)
_stage_name: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "rag_stage_name", default=None
)
_stage_start: contextvars.ContextVar[float | None] = contextvars.ContextVar(
    "rag_stage_start", default=None
)


def _use_color() -> bool:
    if os.environ.get("NO_COLOR"):
        return False
    try:
        return sys.stdout.isatty()
    except Exception:
        return False


def _c(role: str) -> str:
    if not _use_color():
        return ""
    # 38;5;N = foreground 256-color
    codes = {
        "dim": "\033[38;5;239m",
        "stage": "\033[38;5;81m",  # cyan for stage names
        "ok": "\033[38;5;78m",
        "fail": "\033[38;5;203m",
        "fallback": "\033[38;5;214m",  # orange for degraded paths
        "duration": "\033[38;5;221m",
        "model": "\033[38;5;245m",
    }
    return codes.get(role, "")


def _reset() -> str:
    if not _use_color():
        return ""
    return "\033[0m"


@dataclass
class LogEvent:
    event_type: str
    timestamp: str
    data: dict[str, Any]
    request_id: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class PipelineLogger:
    def __init__(self):
        config.logs_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = config.logs_dir / "pipeline.log"
        self._file_lock = threading.Lock()
        self._log_file_handle = open(self.log_file, "a", encoding="utf-8")
        self._setup_console_logger()

    def _setup_console_logger(self):
        self.console = logging.getLogger("rag")
        self.console.setLevel(logging.DEBUG)
        self._console_formatter = logging.Formatter(
            "%(asctime)s │ %(message)s", datefmt="%H:%M:%S"
        )
        if not self.console.handlers:
            handler = logging.StreamHandler()
            handler.setLevel(logging.INFO)
            handler.setFormatter(self._console_formatter)
            self.console.addHandler(handler)
        self._setup_library_console_logging()

    def _setup_library_console_logging(self):
        # Leaf modules log through logging.getLogger(__name__) under src.orchestrators.rag
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        handler.setFormatter(self._console_formatter)
        for name in ("src.orchestrators.rag", "httpx"):
            log = logging.getLogger(name)
            log.setLevel(logging.INFO if name != "httpx" else logging.WARNING)
            log.propagate = False
            if not log.handlers:
                log.addHandler(handler)

    def log_event(self, event: LogEvent) -> None:
        if event.request_id is None:
            event.request_id = _request_id.get()
        with self._file_lock:
            self._log_file_handle.write(event.to_json() + "\n")
            self._log_file_handle.flush()

    def _timestamp(self) -> str:
        return datetime.now().isoformat()

    def _prefix(self) -> str:
        if _stage_name.get():
            return "  │   └ "
        if _request_id.get():
            return "  │ "
        return ""

    def request_started(self, request_id: str, query: str, user_id: str | None):
        _request_id.set(request_id)
        _stage_name.set(None)
        self.log_event(
            LogEvent(
                event_type="REQUEST_STARTED",
                timestamp=self._timestamp(),
                data={"query": query[:500], "user_id": user_id},
            )
        )
        self.console.info(
            f"Search [{request_id[:8]}]: {query[:100]}{'...' if len(query) > 100 else ''}"
        )

    def stage_started(self, stage: str):
        _stage_name.set(stage)
        _stage_start.set(time.monotonic())
        self.log_event(
            LogEvent(
                event_type="STAGE_STARTED",
                timestamp=self._timestamp(),
                data={"stage": stage},
            )
        )
        self.console.debug(f"  │ {_c('stage')}▶ {stage}{_reset()}")

    def stage_finished(
        self, stage: str, success: bool, *, error_reason: str | None = None
    ) -> float:
        start = _stage_start.get()
        _stage_start.set(None)
        _stage_name.set(None)
        elapsed = (time.monotonic() - start) if start is not None else 0.0
        data: dict[str, Any] = {
            "stage": stage,
            "success": success,
            "duration_seconds": round(elapsed, 3),
        }
        if not success and error_reason:
            data["error_reason"] = error_reason[:500]
        self.log_event(
            LogEvent(event_type="STAGE_FINISHED", timestamp=self._timestamp(), data=data)
        )
        dur = f"{_c('duration')}{_format_duration(elapsed)}{_reset()}"
        if success:
            status = f"{_c('ok')}[ok]{_reset()}"
        else:
            status = f"{_c('fail')}[failed]{_reset()} {_short_reason(error_reason)}"
        self.console.info(f"  │ {_c('stage')}{stage}{_reset()}  {dur}  {status}")
        return elapsed

    def fallback_used(self, name: str, reason: str | None = None):
        self.log_event(
            LogEvent(
                event_type="FALLBACK_USED",
                timestamp=self._timestamp(),
                data={"fallback": name, "reason": (reason or "")[:500]},
            )
        )
        suffix = f" ({_short_reason(reason)})" if reason else ""
        self.console.info(
            f"{self._prefix()}{_c('fallback')}↪ fallback{_reset()} {name}{suffix}"
        )

    def external_call(
        self, provider: str, model: str, duration_seconds: float, *, ok: bool = True
    ):
        self.log_event(
            LogEvent(
                event_type="EXTERNAL_CALL",
                timestamp=self._timestamp(),
                data={
                    "provider": provider,
                    "model": model,
                    "duration_seconds": round(duration_seconds, 3),
                    "ok": ok,
                },
            )
        )
        self.console.debug(
            f"{self._prefix()}{provider} {_c('model')}[{model}]{_reset()} "
            f"{_c('duration')}{_format_duration(duration_seconds)}{_reset()}"
        )

    def request_finished(self, result_count: int, duration_seconds: float, success: bool):
        self.log_event(
            LogEvent(
                event_type="REQUEST_FINISHED",
                timestamp=self._timestamp(),
                data={
                    "results": result_count,
                    "success": success,
                    "duration_seconds": round(duration_seconds, 3),
                },
            )
        )
        status = f"{_c('ok')}✓{_reset()}" if success else f"{_c('fail')}✗{_reset()}"
        self.console.info(
            f"  │ {status} {result_count} result(s) in "
            f"{_c('duration')}{_format_duration(duration_seconds)}{_reset()}"
        )
        _request_id.set(None)
        _stage_name.set(None)
        self.console.info(_REQUEST_SEP)

    def error(self, message: str, *args, exception: Exception | None = None, **kwargs):
        self.log_event(
            LogEvent(
                event_type="ERROR",
                timestamp=self._timestamp(),
                data={
                    "message": message,
                    "exception": str(exception) if exception else None,
                },
            )
        )
        allowed = {"exc_info", "stack_info", "stacklevel", "extra"}
        log_kwargs = {k: v for k, v in kwargs.items() if k in allowed}
        if exception and "exc_info" not in log_kwargs:
            log_kwargs["exc_info"] = exception
        self.console.error(f"❌ Error: {message}", *args, **log_kwargs)

    def info(self, message: str, *args, **kwargs):
        allowed = {"exc_info", "stack_info", "stacklevel", "extra"}
        log_kwargs = {k: v for k, v in kwargs.items() if k in allowed}
        self.console.info(self._prefix() + message, *args, **log_kwargs)

    def warning(self, message: str, *args, **kwargs):
        self.log_event(
            LogEvent(
                event_type="WARNING",
                timestamp=self._timestamp(),
                data={"message": message[:500]},
            )
        )
        allowed = {"exc_info", "stack_info", "stacklevel", "extra"}
        log_kwargs = {k: v for k, v in kwargs.items() if k in allowed}
        self.console.warning(f"⚠️ {message}", *args, **log_kwargs)

    def exception(self, message: str, *args, **kwargs):
        self.log_event(
            LogEvent(
                event_type="ERROR",
                timestamp=self._timestamp(),
                data={"message": message[:500]},
            )
        )
        self.console.exception(f"❌ {message}", *args, **kwargs)

    def debug(self, message: str, *args, **kwargs):
        self.log_event(
            LogEvent(event_type="DEBUG", timestamp=self._timestamp(), data={"message": message})
        )
        allowed = {"exc_info", "stack_info", "stacklevel", "extra"}
        log_kwargs = {k: v for k, v in kwargs.items() if k in allowed}
        self.console.debug(message, *args, **log_kwargs)


logger = PipelineLogger()
