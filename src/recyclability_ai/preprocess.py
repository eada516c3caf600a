from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Final

import torch
from PIL import Image, ImageOps

from .errors import AppError, ErrorCode
from .inference.types import PreprocessOutput

_IMAGENET_MEAN: Final[tuple[float, float, float]] = (0.485, 0.456, 0.406)
_IMAGENET_STD: Final[tuple[float, float, float]] = (0.229, 0.224, 0.225)
_PREPROCESS_SIGNATURE: Final[str] = "v1/exif+rgb+letterbox{black}+resize+imagenetnorm"
_PREVIEW_SIDE: Final[int] = 400
_LETTERBOX_FILL: Final[tuple[int, int, int]] = (0, 0, 0)


@dataclass(frozen=True)
class PreprocessOptions:
    image_size: int
    preview: bool
    preview_max_kb: int


def run_preprocess(img: Image.Image, opts: PreprocessOptions) -> PreprocessOutput:
    try:
        rgb = _load_to_rgb(img)
        boxed = letterbox(rgb, max(rgb.size))
        size = (opts.image_size, opts.image_size)
        resized = boxed.resize(size, resample=Image.Resampling.BILINEAR)
        t = _to_normalized_tensor(resized)

        preview: bytes | None = None
        if opts.preview:
            preview = _preview_png(boxed, opts.preview_max_kb)
        return PreprocessOutput(tensor=t, preview_png=preview)
    except AppError:
        raise
    except (ValueError, OSError, RuntimeError, TypeError) as exc:
        raise AppError(ErrorCode.preprocessing_failed, message=str(exc)) from None


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def _load_to_rgb(img: Image.Image) -> Image.Image:
    tmp = ImageOps.exif_transpose(img)
    if tmp is None:
        raise AppError(ErrorCode.invalid_image, message="EXIF transpose failed")
    img2: Image.Image = tmp
    if img2.mode == "P":
        img2 = img2.convert("RGBA")
    if img2.mode in ("RGBA", "LA"):
        img2 = img2.convert("RGBA")
        bg = Image.new("RGBA", img2.size, (255, 255, 255, 255))
        img2 = Image.alpha_composite(bg, img2)
    if img2.mode != "RGB":
        img2 = img2.convert("RGB")
    return img2


def letterbox(img: Image.Image, side: int) -> Image.Image:
    """Fit `img` inside a `side` x `side` canvas keeping aspect ratio, centered."""
    w, h = img.size
    if w <= 0 or h <= 0 or side <= 0:
        raise ValueError("image has no pixels")
    ratio = min(side / w, side / h)
    new_w = max(1, int(round(w * ratio)))
    new_h = max(1, int(round(h * ratio)))
    scaled = img
    if (new_w, new_h) != (w, h):
        scaled = img.resize((new_w, new_h), Image.Resampling.BILINEAR)
    canvas = Image.new("RGB", (side, side), _LETTERBOX_FILL)
    canvas.paste(scaled, ((side - new_w) // 2, (side - new_h) // 2))
    return canvas


def _to_normalized_tensor(img: Image.Image) -> torch.Tensor:
    w, h = img.size
    raw = torch.frombuffer(bytearray(img.tobytes()), dtype=torch.uint8)
    t = raw.reshape(h, w, 3).permute(2, 0, 1).to(dtype=torch.float32) / 255.0
    mean = torch.tensor(_IMAGENET_MEAN, dtype=torch.float32).reshape(3, 1, 1)
    std = torch.tensor(_IMAGENET_STD, dtype=torch.float32).reshape(3, 1, 1)
    return ((t - mean) / std).unsqueeze(0)


def _preview_png(img: Image.Image, max_kb: int) -> bytes | None:
    vis = img.resize((_PREVIEW_SIDE, _PREVIEW_SIDE), resample=Image.Resampling.BILINEAR)
    buf = io.BytesIO()
    vis.save(buf, format="PNG", optimize=True)
    b = buf.getvalue()
    if len(b) > max_kb * 1024:
        return None
    return b
