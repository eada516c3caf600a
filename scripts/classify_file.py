from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from pathlib import Path

from PIL import Image

from recyclability_ai.config import Settings
from recyclability_ai.inference.engine import InferenceEngine
from recyclability_ai.presentation import verdict_for
from recyclability_ai.preprocess import PreprocessOptions, run_preprocess
from recyclability_ai.recyclability import classify


@dataclass(frozen=True)
class ClassifyArgs:
    image: Path
    as_json: bool


def parse_args(argv: list[str] | None = None) -> ClassifyArgs:
    ap = argparse.ArgumentParser(description="Classify a local image as recyclable or not")
    ap.add_argument("image", help="Path to a PNG/JPEG/WebP image")
    ap.add_argument("--json", action="store_true", help="Print a JSON object")
    a = ap.parse_args(argv)
    return ClassifyArgs(image=Path(str(a.image)), as_json=bool(a.json))


def run(args: ClassifyArgs, engine: InferenceEngine, settings: Settings) -> str:
    if not engine.ready:
        raise SystemExit(
            "Model not loaded. Check CLASSIFIER__MODEL_DIR and CLASSIFIER__ACTIVE_MODEL"
        )
    with Image.open(args.image) as img:
        opts = PreprocessOptions(
            image_size=engine.image_size,
            preview=False,
            preview_max_kb=int(settings.classifier.preview_max_kb),
        )
        pre = run_preprocess(img, opts)
    out = engine.submit_predict(pre.tensor).result(
        timeout=float(settings.classifier.predict_timeout_seconds)
    )
    result = classify(out.predictions)
    if args.as_json:
        return json.dumps(
            {
                "is_recyclable": result.is_recyclable,
                "class_name": result.class_name,
                "confidence": result.confidence,
                "predictions": {p.class_name: p.probability for p in out.predictions},
                "model_id": out.model_id,
            }
        )
    return f"{verdict_for(result).text} ({result.class_name} {result.confidence * 100.0:.2f}%)"


def main(argv: list[str] | None = None) -> None:  # pragma: no cover - tiny glue
    from recyclability_ai.logging import init_logging

    init_logging()
    args = parse_args(argv)
    settings = Settings.load()
    engine = InferenceEngine(settings)
    engine.try_load_active()
    print(run(args, engine, settings))


if __name__ == "__main__":
    main()
