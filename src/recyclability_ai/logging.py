from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "recyclability_ai"
_INT_FIELDS: Final[frozenset[str]] = frozenset({"latency_ms"})
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"confidence"})
_BOOL_FIELDS: Final[frozenset[str]] = frozenset({"recyclable", "uncertain"})
_STR_FIELDS: Final[frozenset[str]] = frozenset({"class_name", "model_id", "source"})
# Emission order for EVT records
_FIELD_ORDER: Final[tuple[str, ...]] = (
    "latency_ms",
    "class_name",
    "confidence",
    "recyclable",
    "uncertain",
    "model_id",
    "source",
)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = request_id_var.get()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if rid:
            payload["request_id"] = rid
        extra = _parse_evt_fields(record.getMessage())
        if extra:
            if "event" in extra:
                payload["message"] = str(extra.pop("event"))
            for k, v in extra.items():
                payload[k] = v
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Single-line colored output for terminals.

    `EVT` records print the event name in bold followed by their fields;
    plain messages print the first token as the event and keep `k=v` pairs.
    """

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _LEVELS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "CRIT", "\x1b[95m"),
        (logging.ERROR, "ERROR", "\x1b[91m"),
        (logging.WARNING, "WARN", "\x1b[93m"),
        (logging.INFO, "INFO", "\x1b[36m"),
    )
    _GREEN = "\x1b[92m"
    _RED = "\x1b[91m"
    _KEY = "\x1b[36m"

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        parts: list[str] = [f"{self._DIM}[{ts}]{self._RESET}", self._level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{record.name}{self._RESET}")

        event, pairs, tail = self._split_message(record.getMessage())
        if event:
            parts.append(f"{self._BOLD}{event}{self._RESET}")
        parts.extend(f"{self._KEY}{k}{self._RESET}={self._color_value(k, v)}" for k, v in pairs)
        if tail:
            parts.append(tail)
        if record.exc_info:
            parts.append(f"\n{self._RED}{self.formatException(record.exc_info)}{self._RESET}")

        rid = request_id_var.get()
        if rid:
            parts.append(f"{self._DIM}rid={rid}{self._RESET}")
        return " ".join(parts)

    def _level_tag(self, level: int) -> str:
        for threshold, name, color in self._LEVELS:
            if level >= threshold:
                return f"{self._BOLD}{color}[{name}]{self._RESET}"
        return f"{self._DIM}[DEBUG]{self._RESET}"

    def _split_message(self, msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
        if msg.startswith("EVT "):
            fields = _parse_evt_fields(msg)
            name = str(fields.pop("event", "event"))
            return name, [(k, _render(v)) for k, v in fields.items()], None

        toks = msg.split()
        if not toks:
            return None, [], None
        event = None if "=" in toks[0] else toks[0]
        pairs: list[tuple[str, str]] = []
        rest: list[str] = []
        for t in toks if event is None else toks[1:]:
            k, sep, v = t.partition("=")
            if sep and k:
                pairs.append((k, v))
            else:
                rest.append(t)
        return event, pairs, " ".join(rest) or None

    def _color_value(self, key: str, v: str) -> str:
        if key == "recyclable":
            color = self._GREEN if v == "true" else self._RED
            return f"{color}{v}{self._RESET}"
        if key == "class_name":
            return f"{self._BOLD}{v}{self._RESET}"
        return v


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    parts: list[str] = [f"event={event}"]
    if fields is not None:
        for key in _FIELD_ORDER:
            if key not in fields:
                continue
            val = fields[key]
            if key in _BOOL_FIELDS and isinstance(val, bool):
                parts.append(f"{key}={_render(val)}")
            elif key in _INT_FIELDS and isinstance(val, int) and not isinstance(val, bool):
                parts.append(f"{key}={val}")
            elif key in _FLOAT_FIELDS and isinstance(val, float):
                parts.append(f"{key}={val}")
            elif key in _STR_FIELDS and isinstance(val, str) and val:
                # Values must not contain spaces
                parts.append(f"{key}={val.replace(' ', '_')}")
    get_logger().info("EVT " + " ".join(parts))


def _render(v: object) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        k, sep, v = tok.partition("=")
        key = k.strip()
        if not sep or not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.isdigit():
            val = int(v)
        elif key in _FLOAT_FIELDS:
            val = float(v) if _is_float_str(v) else v
        elif key in _BOOL_FIELDS:
            val = v.lower() in {"1", "true", "yes"}
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    if not s:
        return False
    return s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]


def _env_level() -> int:
    v = os.environ.get("RECYCLABILITY_LOG_LEVEL")
    if not v:
        return logging.INFO
    return {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }.get(v.strip().upper(), logging.INFO)


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Re-binds the StreamHandler to the current `sys.stdout` on every call so
    that replaced streams (pytest capsys) keep receiving records, and never
    stacks duplicate handlers.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("RECYCLABILITY_LOG_PROPAGATE") or _env_truthy("LOG_PROPAGATE")

    formatter = _choose_formatter(style)
    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    force_json = _env_truthy("RECYCLABILITY_LOG_JSON") or _env_truthy("LOG_JSON")
    force_pretty = _env_truthy("RECYCLABILITY_LOG_PRETTY") or _env_truthy("LOG_PRETTY")

    @runtime_checkable
    class _HasIsatty(Protocol):
        def isatty(self) -> bool: ...

    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
