"""
Structured logging for the realtime service.

JSON lines go to `LOG_DIR/app.log` (rotating) and stdout. Every record carries the
tenant and user bound for the current task, and string values are scrubbed of
credentials before rendering. Patient names are never passed to the logger.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Callable
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from clinic_realtime.config import get_settings

tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)

_MASK = "***REDACTED***"
_MIN_LITERAL = 8
_CONFIGURED_FLAG = "_clinic_realtime_logging"


def set_tenant_id(tid: str | None) -> None:
    tenant_id_var.set(tid)


def set_user_id(uid: str | None) -> None:
    user_id_var.set(uid)


# (pattern, replacement) applied in order after literal secrets are masked
_PATTERNS: list[tuple[re.Pattern[str], str | Callable[[re.Match[str]], str]]] = [
    (re.compile(r"(?i)([a-z][a-z0-9+\-.]*://)[^:@/\s]+:[^@/\s]+@"), rf"\1{_MASK}@"),
    (re.compile(r"\beyJ[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\.[a-zA-Z0-9_\-]+\b"), _MASK),
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9_\-\.=]+"), f"Bearer {_MASK}"),
    (re.compile(r"(?i)\bBasic\s+[A-Za-z0-9_\-+/=]+"), f"Basic {_MASK}"),
    (
        re.compile(
            r"(?i)\b(ntfy_auth|apikey|api_key|service_key|token|secret|password)\b\s*=\s*[^\s,;]+"
        ),
        lambda m: f"{m.group(1)}={_MASK}",
    ),
]


def _secret_literals() -> list[str]:
    """Configured secret values long enough to be worth masking verbatim."""
    try:
        sec = get_settings().secret
    except Exception:
        return []
    out: list[str] = []
    for name in type(sec).model_fields:
        value = getattr(sec, name, None)
        raw = value.get_secret_value() if hasattr(value, "get_secret_value") else ""
        raw = str(raw or "")
        if len(raw) >= _MIN_LITERAL and raw not in out:
            out.append(raw)
    return out


def redact(text: str) -> str:
    for lit in _secret_literals():
        text = text.replace(lit, _MASK)
    for pattern, repl in _PATTERNS:
        text = pattern.sub(repl, text)
    return text


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in event_dict.items():
        if isinstance(v, str):
            event_dict[k] = redact(v)
    return event_dict


def add_contextvars(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, var in (("tenant_id", tenant_id_var), ("user_id", user_id_var)):
        value = var.get()
        if value:
            event_dict.setdefault(key, value)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "event" in event_dict and "msg" not in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
        structlog.stdlib.add_log_level,
        add_contextvars,
        redact_event,
        structlog.processors.format_exc_info,
        rename_event_to_msg,
    ]


def _handlers(log_file: Path, *, max_bytes: int, backups: int) -> list[logging.Handler]:
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=_shared_processors(),
    )
    file_handler = RotatingFileHandler(
        filename=str(log_file), maxBytes=max_bytes, backupCount=backups, encoding="utf-8"
    )
    stream_handler = logging.StreamHandler(sys.stdout)
    for h in (file_handler, stream_handler):
        h.setFormatter(formatter)
    return [file_handler, stream_handler]


def configure_logging() -> structlog.stdlib.BoundLogger:
    """Install handlers and structlog processors once per process."""
    s = get_settings()
    root = logging.getLogger()
    root.setLevel(str(s.log_level).upper())
    if getattr(root, _CONFIGURED_FLAG, False):
        return structlog.get_logger("clinic_realtime")

    log_file = Path(s.log_dir) / "app.log"
    log_file.parent.mkdir(parents=True, exist_ok=True)
    root.handlers[:] = _handlers(
        log_file, max_bytes=int(s.log_max_bytes), backups=int(s.log_backup_count)
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    setattr(root, _CONFIGURED_FLAG, True)
    return structlog.get_logger("clinic_realtime")


logger = configure_logging()


def set_log_level(level: str) -> None:
    """Runtime level override (CLI `--log-level`); handlers are left untouched."""
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    logging.getLogger().setLevel(lvl)
