"""Write an untrained model artifact so the service can start locally.

The weights are random; predictions are meaningless until a trained state
dict with the same architecture and label order replaces `model.pt`.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import torch

from recyclability_ai.inference.engine import build_fresh_state_dict
from recyclability_ai.logging import get_logger
from recyclability_ai.preprocess import preprocess_signature
from recyclability_ai.recyclability import LABELS


@dataclass(frozen=True)
class InitArgs:
    model_id: str
    arch: str
    image_size: int
    out_dir: Path


def parse_args(argv: list[str] | None = None) -> InitArgs:
    ap = argparse.ArgumentParser(description="Create a fresh model artifact")
    ap.add_argument("--model-id", default="trash_mobilenet_v2_v1")
    ap.add_argument("--arch", default="mobilenet_v2", choices=["mobilenet_v2", "resnet18"])
    ap.add_argument("--image-size", type=int, default=224)
    ap.add_argument("--out-dir", default="./artifacts/recyclability/models")
    a = ap.parse_args(argv)
    return InitArgs(
        model_id=str(a.model_id),
        arch=str(a.arch),
        image_size=int(a.image_size),
        out_dir=Path(str(a.out_dir)),
    )


def write_artifact(args: InitArgs) -> Path:
    dest = args.out_dir / args.model_id
    dest.mkdir(parents=True, exist_ok=True)
    sd = build_fresh_state_dict(args.arch, len(LABELS))
    torch.save(sd, (dest / "model.pt").as_posix())
    manifest = {
        "schema_version": "v1",
        "model_id": args.model_id,
        "arch": args.arch,
        "labels": list(LABELS),
        "image_size": args.image_size,
        "version": "0.0.0",
        "created_at": datetime.now(UTC).isoformat(),
        "preprocess_hash": preprocess_signature(),
        "val_acc": 0.0,
        "temperature": 1.0,
    }
    (dest / "manifest.json").write_text(json.dumps(manifest, indent=2), encoding="utf-8")
    get_logger().info("init_model_written model_id=%s dir=%s", args.model_id, dest.as_posix())
    return dest


def main(argv: list[str] | None = None) -> None:  # pragma: no cover - tiny glue
    from recyclability_ai.logging import init_logging

    init_logging()
    write_artifact(parse_args(argv))


if __name__ == "__main__":
    main()
