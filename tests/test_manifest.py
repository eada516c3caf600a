from __future__ import annotations

import json
from pathlib import Path

import pytest
from _artifacts import manifest_dict

from recyclability_ai.inference.manifest import ModelManifest
from recyclability_ai.recyclability import LABELS


def test_manifest_from_dict_valid() -> None:
    man = ModelManifest.from_dict(manifest_dict("trash_v1"))
    assert man.model_id == "trash_v1"
    assert man.labels == LABELS
    assert man.n_classes == len(LABELS)
    assert man.image_size == 64


def test_manifest_round_trips_through_file(tmp_path: Path) -> None:
    p = tmp_path / "manifest.json"
    original = ModelManifest.from_dict(manifest_dict("trash_v1", arch="resnet18"))
    p.write_text(json.dumps(original.to_dict()), encoding="utf-8")
    assert ModelManifest.from_path(p) == original


@pytest.mark.parametrize(
    "over",
    [
        {"model_id": ""},
        {"schema_version": "v9"},
        {"arch": "vit_b_16"},
        {"labels": ["Glass"]},
        {"labels": ["Glass", "Glass", "Trash"]},
        {"labels": "Glass,Trash"},
        {"temperature": 0.0},
        {"val_acc": 1.5},
        {"image_size": 8},
    ],
)
def test_manifest_rejects_invalid_fields(over: dict[str, object]) -> None:
    d = manifest_dict("m")
    d.update(over)
    with pytest.raises(ValueError):
        ModelManifest.from_dict(d)


def test_manifest_from_json_requires_object() -> None:
    with pytest.raises(ValueError):
        ModelManifest.from_json("[1, 2]")
