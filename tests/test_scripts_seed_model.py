from __future__ import annotations

import json
from pathlib import Path

import pytest
from _artifacts import manifest_dict
from scripts import seed_model as sm
from scripts.seed_model import SeedArgs, copy_model


def _write_source(root: Path, model_id: str, manifest_id: str | None = None) -> Path:
    src = root / model_id
    src.mkdir(parents=True, exist_ok=True)
    (src / "model.pt").write_bytes(b"x")
    man = manifest_dict(manifest_id or model_id)
    (src / "manifest.json").write_text(json.dumps(man), encoding="utf-8")
    return src


def test_copy_model_success(tmp_path: Path) -> None:
    src_root = tmp_path / "artifacts/recyclability/models"
    dst = tmp_path / "seed/recyclability/models"
    _write_source(src_root, "mid")
    copy_model(SeedArgs(model_id="mid", from_dir=src_root, to_dir=dst))
    assert (dst / "mid/model.pt").exists() and (dst / "mid/manifest.json").exists()


def test_copy_model_missing_raises(tmp_path: Path) -> None:
    args = SeedArgs(model_id="mid", from_dir=tmp_path / "none", to_dir=tmp_path / "seed")
    with pytest.raises(SystemExit):
        copy_model(args)


def test_copy_model_rejects_invalid_or_mismatched_manifest(tmp_path: Path) -> None:
    src_root = tmp_path / "src"
    _write_source(src_root, "a", manifest_id="b")
    with pytest.raises(SystemExit, match="does not match"):
        copy_model(SeedArgs(model_id="a", from_dir=src_root, to_dir=tmp_path / "dst"))

    bad = _write_source(src_root, "c")
    (bad / "manifest.json").write_text("{}", encoding="utf-8")
    with pytest.raises(SystemExit, match="Invalid manifest"):
        copy_model(SeedArgs(model_id="c", from_dir=src_root, to_dir=tmp_path / "dst"))
    assert not (tmp_path / "dst").exists()


def test_parse_args_and_main(tmp_path: Path) -> None:
    src_root = tmp_path / "artifacts"
    dst_root = tmp_path / "seed"
    _write_source(src_root, "m2")
    argv = ["--model-id", "m2", "--from-dir", str(src_root), "--to-dir", str(dst_root)]
    args = sm.parse_args(argv)
    assert args.model_id == "m2" and args.from_dir == src_root and args.to_dir == dst_root
    sm.main(argv)
    assert (dst_root / "m2/model.pt").exists()
