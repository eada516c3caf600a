from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
import torch
from _artifacts import manifest_dict, settings_with, write_artifact

from recyclability_ai.inference.engine import (
    InferenceEngine,
    _validate_state_dict,
    build_fresh_state_dict,
)
from recyclability_ai.inference.manifest import ModelManifest
from recyclability_ai.recyclability import LABELS


class _M:
    """Dummy model recording the batch size and returning fixed logits."""

    def __init__(self, logits: list[float]) -> None:
        self.logits = torch.tensor(logits, dtype=torch.float32)
        self.last_batch = 0

    def eval(self) -> object:
        return self

    def __call__(self, x: torch.Tensor) -> torch.Tensor:
        self.last_batch = int(x.shape[0])
        return self.logits.repeat(self.last_batch, 1)

    def load_state_dict(self, sd: dict[str, torch.Tensor]) -> object:
        return self


def _engine_with_model(model: _M, tta: bool = False, **man: object) -> InferenceEngine:
    eng = InferenceEngine(settings_with(tta=tta))
    eng._manifest = ModelManifest.from_dict(manifest_dict("m", **man))
    eng._model = model
    return eng


def test_engine_without_model_rejects_predict() -> None:
    eng = InferenceEngine(settings_with())
    with pytest.raises(RuntimeError, match="Model not loaded"):
        eng._predict_impl(torch.zeros((1, 3, 64, 64), dtype=torch.float32))
    assert eng.ready is False and eng.model_id is None
    assert eng.image_size == 224


def test_predictions_follow_manifest_label_order() -> None:
    eng = _engine_with_model(_M([0.0, 0.0, 0.0, 0.0, 0.0, 4.0]))
    out = eng._predict_impl(torch.zeros((3, 64, 64), dtype=torch.float32))
    assert [p.class_name for p in out.predictions] == list(LABELS)
    assert out.model_id == "m"
    assert abs(sum(p.probability for p in out.predictions) - 1.0) < 1e-5
    top = max(out.predictions, key=lambda p: p.probability)
    assert top.class_name == "Trash"


def test_temperature_flattens_distribution() -> None:
    logits = [2.0, 0.0, 0.0, 0.0, 0.0, 0.0]
    sharp = _engine_with_model(_M(logits))._predict_impl(torch.zeros((1, 3, 64, 64)))
    flat = _engine_with_model(_M(logits), temperature=4.0)._predict_impl(
        torch.zeros((1, 3, 64, 64))
    )
    assert flat.predictions[0].probability < sharp.predictions[0].probability


def test_tta_adds_mirrored_frame() -> None:
    m0 = _M([0.0] * 6)
    _engine_with_model(m0, tta=False)._predict_impl(torch.zeros((1, 3, 64, 64)))
    assert m0.last_batch == 1

    m1 = _M([0.0] * 6)
    _engine_with_model(m1, tta=True)._predict_impl(torch.zeros((1, 3, 64, 64)))
    assert m1.last_batch == 2


def test_output_size_mismatch_raises() -> None:
    eng = _engine_with_model(_M([0.0, 1.0, 2.0]))
    with pytest.raises(RuntimeError):
        eng._predict_impl(torch.zeros((1, 3, 64, 64)))


def test_try_load_active_and_predict(tmp_path: Path) -> None:
    write_artifact(tmp_path, "trash_v1")
    eng = InferenceEngine(settings_with(model_dir=tmp_path, active_model="trash_v1"))
    eng.try_load_active()
    assert eng.ready is True and eng.model_id == "trash_v1"
    assert eng.image_size == 64
    out = eng.submit_predict(torch.zeros((1, 3, 64, 64))).result(timeout=30)
    assert len(out.predictions) == len(LABELS)


def test_try_load_active_refuses_foreign_label_set(tmp_path: Path) -> None:
    labels = ["Cardboard", "Glass", "Metal", "Paper", "Plastic", "Compost"]
    write_artifact(tmp_path, "foreign", labels=labels)
    eng = InferenceEngine(settings_with(model_dir=tmp_path, active_model="foreign"))
    eng.try_load_active()
    assert eng.ready is False


def test_try_load_active_refuses_signature_mismatch(tmp_path: Path) -> None:
    write_artifact(tmp_path, "old", preprocess_hash="v0/other")
    eng = InferenceEngine(settings_with(model_dir=tmp_path, active_model="old"))
    eng.try_load_active()
    assert eng.ready is False


def test_try_load_active_ignores_corrupt_weights(tmp_path: Path) -> None:
    dest = write_artifact(tmp_path, "bad")
    (dest / "model.pt").write_bytes(b"not a torch file")
    eng = InferenceEngine(settings_with(model_dir=tmp_path, active_model="bad"))
    eng.try_load_active()
    assert eng.ready is False


def test_try_load_active_missing_dir_is_noop(tmp_path: Path) -> None:
    eng = InferenceEngine(settings_with(model_dir=tmp_path, active_model="absent"))
    eng.try_load_active()
    assert eng.ready is False


def test_reload_if_changed_detects_updates(tmp_path: Path) -> None:
    dest = write_artifact(tmp_path, "live", arch="resnet18")
    eng = InferenceEngine(settings_with(model_dir=tmp_path, active_model="live"))
    assert eng.reload_if_changed() is False
    eng.try_load_active()
    assert eng.ready is True

    man = json.loads((dest / "manifest.json").read_text(encoding="utf-8"))
    man["model_id"] = "live_v2"
    (dest / "manifest.json").write_text(json.dumps(man), encoding="utf-8")
    # Force a newer mtime regardless of filesystem timestamp resolution
    st = (dest / "manifest.json").stat()
    os.utime(dest / "manifest.json", (st.st_atime, st.st_mtime + 10))

    assert eng.reload_if_changed() is True and eng.model_id == "live_v2"
    assert eng.reload_if_changed() is False


def test_validate_state_dict_checks_head() -> None:
    sd = build_fresh_state_dict("resnet18", len(LABELS))
    _validate_state_dict(sd, "resnet18", len(LABELS))
    with pytest.raises(ValueError):
        _validate_state_dict(sd, "resnet18", 3)
    with pytest.raises(ValueError):
        _validate_state_dict(sd, "mobilenet_v2", len(LABELS))
    with pytest.raises(ValueError):
        _validate_state_dict(sd, "unknown", len(LABELS))
