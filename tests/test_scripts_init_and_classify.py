from __future__ import annotations

import json
from pathlib import Path

import pytest
from _artifacts import png_bytes, settings_with
from scripts import classify_file as cf
from scripts import init_model as im

from recyclability_ai.inference.engine import InferenceEngine
from recyclability_ai.inference.manifest import ModelManifest
from recyclability_ai.recyclability import LABELS


def test_init_model_writes_loadable_artifact(tmp_path: Path) -> None:
    argv = ["--model-id", "fresh", "--arch", "resnet18", "--image-size", "64"]
    args = im.parse_args([*argv, "--out-dir", str(tmp_path)])
    dest = im.write_artifact(args)
    man = ModelManifest.from_path(dest / "manifest.json")
    assert man.model_id == "fresh" and man.arch == "resnet18"
    assert man.labels == LABELS and man.image_size == 64

    eng = InferenceEngine(settings_with(model_dir=tmp_path, active_model="fresh"))
    eng.try_load_active()
    assert eng.ready is True


def test_classify_file_prints_verdict_and_json(tmp_path: Path) -> None:
    im.write_artifact(
        im.InitArgs(model_id="cli", arch="mobilenet_v2", image_size=64, out_dir=tmp_path)
    )
    settings = settings_with(model_dir=tmp_path, active_model="cli")
    eng = InferenceEngine(settings)
    eng.try_load_active()
    img = tmp_path / "bottle.png"
    img.write_bytes(png_bytes())

    text = cf.run(cf.parse_args([str(img)]), eng, settings)
    assert text.startswith(("✅ Recyclable", "❌ Non-Recyclable"))

    obj = json.loads(cf.run(cf.parse_args([str(img), "--json"]), eng, settings))
    assert obj["model_id"] == "cli"
    assert set(obj["predictions"]) == set(LABELS)
    assert obj["is_recyclable"] is (obj["class_name"] != "Trash")


def test_classify_file_requires_loaded_model(tmp_path: Path) -> None:
    settings = settings_with(model_dir=tmp_path, active_model="absent")
    eng = InferenceEngine(settings)
    with pytest.raises(SystemExit):
        cf.run(cf.ClassifyArgs(image=tmp_path / "x.png", as_json=False), eng, settings)
