from __future__ import annotations

import os
import pickle
import threading
import zipfile
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import TYPE_CHECKING, Final, Protocol

import torch
from torch import Tensor

from ..config import Settings
from ..logging import get_logger
from ..recyclability import LABELS, Prediction, same_label_set
from .manifest import ModelManifest
from .types import PredictOutput

DEFAULT_IMAGE_SIZE: Final[int] = 224
_HEAD_KEYS: Final[dict[str, tuple[str, str, int]]] = {
    # arch -> (weight key, bias key, expected in_features)
    "mobilenet_v2": ("classifier.1.weight", "classifier.1.bias", 1280),
    "resnet18": ("fc.weight", "fc.bias", 512),
}
_LOAD_ERRORS: Final[tuple[type[BaseException], ...]] = (
    OSError,
    ValueError,
    RuntimeError,
    TypeError,
    EOFError,
    pickle.UnpicklingError,
    zipfile.BadZipFile,
)


class InferenceEngine:
    """Bounded thread-pool inference engine with a Torch CPU image classifier."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._logger = get_logger()
        self._pool = _make_pool(settings)
        self._model_lock = threading.RLock()
        self._model: TorchModel | None = None
        self._manifest: ModelManifest | None = None
        self._artifacts_dir: Path | None = None
        self._last_manifest_mtime: float | None = None
        self._last_model_mtime: float | None = None
        torch.set_num_threads(1)

    @property
    def ready(self) -> bool:
        return self._model is not None and self._manifest is not None

    @property
    def model_id(self) -> str | None:
        return self._manifest.model_id if self._manifest is not None else None

    @property
    def manifest(self) -> ModelManifest | None:
        return self._manifest

    @property
    def image_size(self) -> int:
        man = self._manifest
        return int(man.image_size) if man is not None else DEFAULT_IMAGE_SIZE

    def submit_predict(self, preprocessed: Tensor) -> Future[PredictOutput]:
        return self._pool.submit(self._predict_impl, preprocessed)

    def _predict_impl(self, preprocessed: Tensor) -> PredictOutput:
        with self._model_lock:
            man = self._manifest
            model_obj = self._model
        if man is None or model_obj is None:
            raise RuntimeError("Model not loaded")

        tensor = _as_torch_tensor(preprocessed)
        batch = _augment_for_tta(tensor) if self._settings.classifier.tta else tensor
        model_obj.eval()
        with torch.no_grad():
            logits_obj = model_obj(batch)
        probs = _softmax_avg(logits_obj, float(man.temperature))
        if len(probs) != len(man.labels):
            raise RuntimeError("model output size does not match manifest labels")
        preds = tuple(
            Prediction(class_name=name, probability=float(p))
            for name, p in zip(man.labels, probs, strict=True)
        )
        return PredictOutput(predictions=preds, model_id=man.model_id)

    def try_load_active(self) -> None:
        active = self._settings.classifier.active_model
        model_dir = self._settings.classifier.model_dir / active
        if not model_dir.exists():
            return
        manifest_path = model_dir / "manifest.json"
        model_path = model_dir / "model.pt"
        if not (manifest_path.exists() and model_path.exists()):
            return
        try:
            manifest = ModelManifest.from_path(manifest_path)
        except (OSError, ValueError):
            self._logger.info("manifest_load_failed model_id=%s", active)
            return
        from ..preprocess import preprocess_signature

        if manifest.preprocess_hash != preprocess_signature():
            self._logger.info("preprocess_signature_mismatch model_id=%s", active)
            return
        if not same_label_set(manifest.labels, LABELS):
            self._logger.info("label_set_mismatch model_id=%s", active)
            return
        model = _build_model(arch=manifest.arch, n_classes=manifest.n_classes)
        try:
            sd = _load_state_dict_file(model_path)
        except _LOAD_ERRORS:
            self._logger.info("state_dict_load_failed model_id=%s", active)
            return
        try:
            _validate_state_dict(sd, manifest.arch, manifest.n_classes)
            model.load_state_dict(sd)
        except (ValueError, RuntimeError):
            self._logger.info("state_dict_invalid model_id=%s", active)
            return
        with self._model_lock:
            self._model = model
            self._manifest = manifest
            self._artifacts_dir = model_dir
            try:
                self._last_manifest_mtime = manifest_path.stat().st_mtime
                self._last_model_mtime = model_path.stat().st_mtime
            except OSError:
                # Hot reload stays disabled without mtimes
                self._logger.info("artifact_mtime_unavailable")
                self._last_manifest_mtime = None
                self._last_model_mtime = None
        self._logger.info("model_loaded model_id=%s arch=%s", manifest.model_id, manifest.arch)

    def reload_if_changed(self) -> bool:
        """Reload the active model if its manifest or weights changed on disk.

        Returns True if a reload occurred and the engine remains ready.
        """
        art = self._artifacts_dir
        if art is None:
            return False
        manifest_path = art / "manifest.json"
        model_path = art / "model.pt"
        try:
            m1 = manifest_path.stat().st_mtime
            m2 = model_path.stat().st_mtime
        except OSError:
            self._logger.info("artifact_mtime_unavailable")
            return False
        if self._last_manifest_mtime is None or self._last_model_mtime is None:
            return False
        if m1 <= self._last_manifest_mtime and m2 <= self._last_model_mtime:
            return False
        self.try_load_active()
        return self.ready


def _make_pool(settings: Settings) -> ThreadPoolExecutor:
    if settings.app.threads == 0:
        size = min(8, os.cpu_count() or 1)
    else:
        size = settings.app.threads
    return ThreadPoolExecutor(max_workers=size, thread_name_prefix="predict")


class TorchModel(Protocol):
    def eval(self) -> object: ...
    def __call__(self, x: Tensor) -> Tensor: ...
    def load_state_dict(self, sd: dict[str, Tensor]) -> object: ...


if TYPE_CHECKING:

    def _build_model(arch: str, n_classes: int) -> TorchModel: ...
else:

    def _build_model(arch: str, n_classes: int) -> TorchModel:
        import importlib

        if arch not in _HEAD_KEYS:
            raise ValueError(f"unsupported arch: {arch}")
        tv_models = importlib.import_module("torchvision.models")
        fn_obj = getattr(tv_models, arch, None)
        if not callable(fn_obj):
            raise RuntimeError(f"torchvision.models.{arch} is not callable")
        return fn_obj(weights=None, num_classes=int(n_classes))


if TYPE_CHECKING:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]: ...
else:

    def build_fresh_state_dict(arch: str, n_classes: int) -> dict[str, Tensor]:
        m = _build_model(arch=arch, n_classes=n_classes)
        sd_obj = m.state_dict()
        out: dict[str, Tensor] = {}
        for k, v in sd_obj.items():
            if isinstance(k, str) and torch.is_tensor(v):
                out[k] = v
            else:
                raise RuntimeError("invalid state dict entry from model")
        return out


def _as_torch_tensor(x: Tensor) -> Tensor:
    t = x
    if t.ndim == 3:
        # 3xSxS -> add batch
        t = t.unsqueeze(0)
    return t.to(dtype=torch.float32)


def _softmax_avg(logits: Tensor, temperature: float) -> list[float]:
    probs = torch.softmax(logits / temperature, dim=1)
    mean_probs = probs.mean(dim=0) if probs.ndim == 2 and probs.shape[0] > 1 else probs[0]
    return [float(v) for v in mean_probs.tolist()]


def _augment_for_tta(x: Tensor) -> Tensor:
    # Identity + horizontal mirror, the browser shows webcam frames flipped
    if x.ndim != 4:
        return x
    return torch.cat([x, torch.flip(x, dims=(3,))], dim=0)


if TYPE_CHECKING:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]: ...
else:

    def _load_state_dict_file(path: Path) -> dict[str, Tensor]:
        obj = torch.load(path.as_posix(), map_location=torch.device("cpu"), weights_only=True)
        sd_obj = obj["state_dict"] if isinstance(obj, dict) and "state_dict" in obj else obj
        if not isinstance(sd_obj, dict):
            raise ValueError("state dict file did not contain a dict")
        out: dict[str, Tensor] = {}
        for k, v in sd_obj.items():
            if isinstance(k, str) and torch.is_tensor(v):
                out[k] = v
            else:
                raise ValueError("invalid state dict entry")
        return out


def _validate_state_dict(sd: dict[str, Tensor], arch: str, n_classes: int) -> None:
    keys = _HEAD_KEYS.get(arch)
    if keys is None:
        raise ValueError(f"unsupported arch: {arch}")
    w_key, b_key, expected_in = keys
    w = sd.get(w_key)
    b = sd.get(b_key)
    if w is None or b is None:
        raise ValueError("missing classifier weights in state dict")
    if w.ndim != 2 or b.ndim != 1:
        raise ValueError("invalid classifier tensor dimensions")
    if int(w.shape[0]) != n_classes or int(b.shape[0]) != n_classes:
        raise ValueError("classifier head size does not match label count")
    if int(w.shape[1]) != expected_in:
        raise ValueError("classifier head in_features does not match backbone")
    # 3-channel RGB stem
    stem = sd.get("conv1.weight") if arch == "resnet18" else sd.get("features.0.0.weight")
    if stem is None or stem.ndim != 4 or int(stem.shape[1]) != 3:
        raise ValueError("missing or invalid RGB stem convolution")
