from __future__ import annotations

import os
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final, TypeVar

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/recyclability.toml")

_T = TypeVar("_T")


@dataclass(frozen=True)
class AppConfig:
    threads: int = 0
    port: int = 8081
    # Seconds between model artifact checks, 0 disables hot reload
    reload_interval_seconds: float = 5.0


@dataclass(frozen=True)
class ClassifierConfig:
    model_dir: Path = Path("/data/recyclability/models")
    active_model: str = "trash_mobilenet_v2_v1"
    tta: bool = False
    uncertain_threshold: float = 0.50
    max_image_mb: int = 5
    max_image_side_px: int = 4096
    predict_timeout_seconds: int = 5
    preview_max_kb: int = 256


@dataclass(frozen=True)
class SecurityConfig:
    # Empty string disables the check
    api_key: str = ""


def _as_int(v: object) -> int:
    if isinstance(v, bool):
        raise ValueError("expected an integer")
    return int(str(v).strip())


def _as_bool(v: object) -> bool:
    if isinstance(v, bool):
        return v
    return str(v).strip().lower() in {"1", "true", "yes", "on"}


def _as_port(v: object) -> int:
    p = _as_int(v)
    if not (1 <= p <= 65535):
        raise ValueError("port out of range")
    return p


def _as_interval(v: object) -> float:
    f = float(str(v))
    if f < 0.0:
        raise ValueError("reload_interval_seconds must be >= 0")
    return f


def _as_threshold(v: object) -> float:
    f = float(str(v))
    if not (0.0 <= f <= 1.0):
        raise ValueError("uncertain_threshold must be within [0,1]")
    return f


_APP_FIELDS: Final[dict[str, Callable[[object], object]]] = {
    "threads": _as_int,
    "port": _as_port,
    "reload_interval_seconds": _as_interval,
}
_CLASSIFIER_FIELDS: Final[dict[str, Callable[[object], object]]] = {
    "model_dir": lambda v: Path(str(v)),
    "active_model": str,
    "tta": _as_bool,
    "uncertain_threshold": _as_threshold,
    "max_image_mb": _as_int,
    "max_image_side_px": _as_int,
    "predict_timeout_seconds": _as_int,
    "preview_max_kb": _as_int,
}
# Older configs name the threshold after the confidence cut-off
_CLASSIFIER_ALIASES: Final[dict[str, str]] = {"conf_threshold": "uncertain_threshold"}


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    classifier: ClassifierConfig
    security: SecurityConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("RECYCLABILITY_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        """Build settings from `APP__*`, `CLASSIFIER__*` and `SECURITY__*` env vars.

        A TOML file at `RECYCLABILITY_CONFIG` (default `config/recyclability.toml`)
        overrides the environment when it exists. Invalid values raise RuntimeError.
        """
        app = _apply(AppConfig(), _APP_FIELDS, _env_section("APP", _APP_FIELDS))
        classifier = _apply(
            ClassifierConfig(), _CLASSIFIER_FIELDS, _env_section("CLASSIFIER", _CLASSIFIER_FIELDS)
        )
        security = SecurityConfig(api_key=os.getenv("SECURITY__API_KEY", ""))

        cfg_path = cls._toml_path()
        if cfg_path.exists():
            raw = _read_toml(cfg_path)
            app = _apply(app, _APP_FIELDS, _toml_table(raw, "app"))
            classifier_in = {
                _CLASSIFIER_ALIASES.get(k, k): v for k, v in _toml_table(raw, "classifier").items()
            }
            classifier = _apply(classifier, _CLASSIFIER_FIELDS, classifier_in)
            security = _merge_security(security, _toml_table(raw, "security"))
        return cls(app=app, classifier=classifier, security=security)


def _env_section(prefix: str, fields: Mapping[str, object]) -> dict[str, object]:
    out: dict[str, object] = {}
    for name in fields:
        v = os.getenv(f"{prefix}__{name.upper()}")
        if v is not None and v.strip() != "":
            out[name] = v
    return out


def _apply(
    base: _T, fields: Mapping[str, Callable[[object], object]], data: Mapping[str, object]
) -> _T:
    changes: dict[str, object] = {}
    for key, conv in fields.items():
        if key not in data:
            continue
        try:
            changes[key] = conv(data[key])
        except ValueError as exc:
            raise RuntimeError(f"Invalid config value for {key}: {exc}") from exc
    return replace(base, **changes) if changes else base  # type: ignore[type-var]


def _read_toml(path: Path) -> dict[str, object]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise RuntimeError(f"Failed to read config TOML: {path}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise RuntimeError(f"Invalid TOML config: {path}") from exc


def _toml_table(raw: Mapping[str, object], key: str) -> dict[str, object]:
    tab = raw.get(key, {})
    if isinstance(tab, dict):
        return {str(k): v for k, v in tab.items()}
    return {}


def _merge_security(base: SecurityConfig, data: Mapping[str, object]) -> SecurityConfig:
    out = base
    api_key = data.get("api_key")
    if isinstance(api_key, str):
        out = replace(out, api_key=api_key)
    enabled = data.get("api_key_enabled")
    if isinstance(enabled, bool) and not enabled:
        out = replace(out, api_key="")
    return out


@dataclass(frozen=True)
class Limits:
    max_bytes: int
    max_side_px: int

    @staticmethod
    def from_settings(s: Settings) -> Limits:
        return Limits(
            max_bytes=int(s.classifier.max_image_mb) * 1024 * 1024,
            max_side_px=int(s.classifier.max_image_side_px),
        )
