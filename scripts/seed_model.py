from __future__ import annotations

import argparse
import shutil
from dataclasses import dataclass
from pathlib import Path

from recyclability_ai.inference.manifest import ModelManifest
from recyclability_ai.logging import get_logger


@dataclass(frozen=True)
class SeedArgs:
    model_id: str
    from_dir: Path
    to_dir: Path


def parse_args(argv: list[str] | None = None) -> SeedArgs:
    ap = argparse.ArgumentParser(description="Copy a model artifact into the seed directory")
    ap.add_argument("--model-id", required=True, help="Model id folder name")
    ap.add_argument("--from-dir", default="./artifacts/recyclability/models", help="Source root")
    ap.add_argument("--to-dir", default="./seed/recyclability/models", help="Destination root")
    a = ap.parse_args(argv)
    return SeedArgs(
        model_id=str(a.model_id),
        from_dir=Path(str(a.from_dir)),
        to_dir=Path(str(a.to_dir)),
    )


def copy_model(args: SeedArgs) -> None:
    src = args.from_dir / args.model_id
    dst = args.to_dir / args.model_id
    src_model = src / "model.pt"
    src_manifest = src / "manifest.json"
    if not (src_model.exists() and src_manifest.exists()):
        raise SystemExit(
            f"Source files not found: {src_model.as_posix()} and {src_manifest.as_posix()}"
        )
    try:
        man = ModelManifest.from_path(src_manifest)
    except ValueError as exc:
        raise SystemExit(f"Invalid manifest: {exc}") from None
    if man.model_id != args.model_id:
        raise SystemExit(f"Manifest model_id {man.model_id!r} does not match {args.model_id!r}")
    dst.mkdir(parents=True, exist_ok=True)
    shutil.copy2(src_model, dst / "model.pt")
    shutil.copy2(src_manifest, dst / "manifest.json")
    get_logger().info(
        "seed_model_copied model_id=%s src=%s dst=%s",
        args.model_id,
        src.as_posix(),
        dst.as_posix(),
    )


def main(argv: list[str] | None = None) -> None:
    from recyclability_ai.logging import init_logging

    init_logging()
    copy_model(parse_args(argv))


if __name__ == "__main__":
    main()
