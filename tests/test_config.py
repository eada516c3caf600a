from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

from recyclability_ai.config import Limits, Settings


def test_app_port_out_of_range_raises() -> None:
    env = os.environ.copy()
    env["APP__PORT"] = "70000"
    with pytest.raises(RuntimeError):
        _ = _load_with_env(env)


def test_classifier_conf_threshold_toml_mapping() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[classifier]
conf_threshold = 0.42
active_model = "custom_v2"
tta = true
""".strip(),
            encoding="utf-8",
        )
        env = os.environ.copy()
        env["RECYCLABILITY_CONFIG"] = p.as_posix()
        s = _load_with_env(env)
        assert abs(float(s.classifier.uncertain_threshold) - 0.42) < 1e-6
        assert s.classifier.active_model == "custom_v2"
        assert s.classifier.tta is True


def test_threshold_out_of_range_raises() -> None:
    env = os.environ.copy()
    env["CLASSIFIER__UNCERTAIN_THRESHOLD"] = "1.5"
    with pytest.raises(RuntimeError):
        _ = _load_with_env(env)


def test_non_numeric_env_value_raises() -> None:
    env = os.environ.copy()
    env["CLASSIFIER__MAX_IMAGE_MB"] = "five"
    with pytest.raises(RuntimeError):
        _ = _load_with_env(env)


def test_defaults_without_env_or_file(tmp_path: Path) -> None:
    env = {"RECYCLABILITY_CONFIG": (tmp_path / "none.toml").as_posix()}
    s = _load_with_env(env)
    assert s.classifier.active_model == "trash_mobilenet_v2_v1"
    assert s.classifier.tta is False and s.security.api_key == ""
    assert s.app.port == 8081
    assert s.app.reload_interval_seconds == 5.0


def test_security_api_key_enabled_false_disables_key() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[security]
api_key = "secret"
api_key_enabled = false
""".strip(),
            encoding="utf-8",
        )
        env = os.environ.copy()
        env["RECYCLABILITY_CONFIG"] = p.as_posix()
        s = _load_with_env(env)
        assert s.security.api_key == ""


def test_invalid_toml_raises() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text("[classifier\nbroken", encoding="utf-8")
        env = os.environ.copy()
        env["RECYCLABILITY_CONFIG"] = p.as_posix()
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_env_overrides_happy_paths() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = os.environ.copy()
        env["CLASSIFIER__MODEL_DIR"] = (Path(td) / "models").as_posix()
        env["CLASSIFIER__PREVIEW_MAX_KB"] = "2"
        env["CLASSIFIER__PREDICT_TIMEOUT_SECONDS"] = "1"
        env["CLASSIFIER__MAX_IMAGE_MB"] = "3"
        env["SECURITY__API_KEY"] = "k"
        env["APP__PORT"] = "9000"
        # Non-existent TOML so env values are not overridden by a repo config
        env["RECYCLABILITY_CONFIG"] = (Path(td) / "missing.toml").as_posix()
        s = _load_with_env(env)
        assert s.classifier.model_dir.as_posix().endswith("models")
        assert int(s.classifier.preview_max_kb) == 2
        assert int(s.classifier.predict_timeout_seconds) == 1
        assert s.security.api_key == "k"
        assert s.app.port == 9000
        limits = Limits.from_settings(s)
        assert limits.max_bytes == 3 * 1024 * 1024


def test_reload_interval_from_env_and_toml(tmp_path: Path) -> None:
    env = os.environ.copy()
    env["APP__RELOAD_INTERVAL_SECONDS"] = "2.5"
    env["RECYCLABILITY_CONFIG"] = (tmp_path / "missing.toml").as_posix()
    assert _load_with_env(env).app.reload_interval_seconds == 2.5

    p = tmp_path / "cfg.toml"
    p.write_text("[app]\nreload_interval_seconds = 0\n", encoding="utf-8")
    env["RECYCLABILITY_CONFIG"] = p.as_posix()
    assert _load_with_env(env).app.reload_interval_seconds == 0.0

    env["APP__RELOAD_INTERVAL_SECONDS"] = "-1"
    env["RECYCLABILITY_CONFIG"] = (tmp_path / "missing.toml").as_posix()
    with pytest.raises(RuntimeError):
        _ = _load_with_env(env)


def _load_with_env(env: dict[str, str]) -> Settings:
    old = os.environ.copy()
    try:
        os.environ.clear()
        for k, v in env.items():
            os.environ[k] = v
        return Settings.load()
    finally:
        os.environ.clear()
        for k, v in old.items():
            os.environ[k] = v
