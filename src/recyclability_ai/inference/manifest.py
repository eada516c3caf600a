from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Final

_ALLOWED_SCHEMA_VERSIONS: Final[tuple[str, ...]] = ("v1",)
_ALLOWED_ARCHS: Final[tuple[str, ...]] = ("mobilenet_v2", "resnet18")


@dataclass(frozen=True)
class ModelManifest:
    schema_version: str
    model_id: str
    arch: str
    labels: tuple[str, ...]
    image_size: int
    version: str
    created_at: datetime
    preprocess_hash: str
    val_acc: float
    temperature: float

    @property
    def n_classes(self) -> int:
        return len(self.labels)

    @staticmethod
    def from_path(path: Path) -> ModelManifest:
        return ModelManifest.from_json(path.read_text(encoding="utf-8"))

    @staticmethod
    def from_json(s: str) -> ModelManifest:
        obj: object = json.loads(s)
        if not isinstance(obj, dict):
            raise ValueError("manifest must be a JSON object")
        data: dict[str, object] = {str(k): v for k, v in obj.items()}
        return ModelManifest.from_dict(data)

    @staticmethod
    def from_dict(d: dict[str, object]) -> ModelManifest:
        created_at_str = str(d["created_at"]) if "created_at" in d else ""
        created = datetime.fromisoformat(created_at_str) if created_at_str else datetime.now()
        labels = _parse_labels(d.get("labels"))
        image_size = int(str(d.get("image_size", 224)))
        val_acc = float(str(d.get("val_acc", 0.0)))
        temperature = float(str(d.get("temperature", 1.0)))
        if image_size < 32:
            raise ValueError("image_size must be >= 32")
        if not (0.0 <= val_acc <= 1.0):
            raise ValueError("val_acc must be within [0,1]")
        if temperature <= 0.0:
            raise ValueError("temperature must be > 0")
        schema_version = str(d.get("schema_version", "")).strip()
        model_id = str(d.get("model_id", "")).strip()
        arch = str(d.get("arch", "")).strip()
        version = str(d.get("version", "")).strip()
        preprocess_hash = str(d.get("preprocess_hash", "")).strip()
        if not schema_version or not model_id or not arch or not version or not preprocess_hash:
            raise ValueError("manifest is missing required fields")
        if schema_version not in _ALLOWED_SCHEMA_VERSIONS:
            raise ValueError("unsupported manifest schema version")
        if arch not in _ALLOWED_ARCHS:
            raise ValueError(f"unsupported arch: {arch}")
        return ModelManifest(
            schema_version=schema_version,
            model_id=model_id,
            arch=arch,
            labels=labels,
            image_size=image_size,
            version=version,
            created_at=created,
            preprocess_hash=preprocess_hash,
            val_acc=val_acc,
            temperature=temperature,
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "model_id": self.model_id,
            "arch": self.arch,
            "labels": list(self.labels),
            "image_size": self.image_size,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "preprocess_hash": self.preprocess_hash,
            "val_acc": self.val_acc,
            "temperature": self.temperature,
        }


def _parse_labels(raw: object) -> tuple[str, ...]:
    if not isinstance(raw, list):
        raise ValueError("labels must be a list")
    labels = tuple(str(x).strip() for x in raw)
    if len(labels) < 2:
        raise ValueError("labels must name at least two classes")
    if any(not name for name in labels):
        raise ValueError("labels must be non-empty strings")
    if len(set(labels)) != len(labels):
        raise ValueError("labels must be unique")
    return labels
