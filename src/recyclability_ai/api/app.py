from __future__ import annotations

import base64
import io
import threading
import time
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from concurrent.futures import TimeoutError as FutureTimeout
from pathlib import Path
from typing import Annotated, Final
from weakref import WeakKeyDictionary

from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.params import Depends as DependsParamType
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from PIL import Image, ImageFile, UnidentifiedImageError
from starlette.datastructures import FormData
from starlette.datastructures import UploadFile as FormFile

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, new_error, status_for
from ..inference.engine import InferenceEngine
from ..logging import get_logger, init_logging, log_event
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..presentation import empty_bars, probability_bars, verdict_for
from ..preprocess import PreprocessOptions, run_preprocess
from ..recyclability import (
    LABELS,
    RECYCLABLE_CLASSES,
    Prediction,
    RecyclabilityResult,
    check_label_set,
    classify,
)
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ClassifyResponse, RecyclabilityRequest, RecyclabilityResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False

_STATIC_DIR: Final[Path] = Path(__file__).resolve().parent.parent / "static"
_SUPPORTED_TYPES: Final[tuple[str, ...]] = ("image/png", "image/jpeg", "image/jpg", "image/webp")


def _setup_optional_reloader(
    engine: InferenceEngine, reload_interval_seconds: float | None
) -> tuple[Callable[[], None], Callable[[], None]] | None:
    """Build start/stop hooks for a thread polling `engine.reload_if_changed()`.

    Returns None when `reload_interval_seconds` is falsy or non-positive.
    """
    if reload_interval_seconds is None or float(reload_interval_seconds) <= 0.0:
        return None

    stop_evt: threading.Event | None = None
    thread: threading.Thread | None = None

    def _start_bg_reloader() -> None:
        nonlocal stop_evt, thread
        stop_evt = threading.Event()
        evt = stop_evt

        def _loop() -> None:
            interval = float(reload_interval_seconds)
            while not evt.is_set():
                engine.reload_if_changed()
                evt.wait(interval)

        thread = threading.Thread(target=_loop, name="model-reloader", daemon=True)
        thread.start()

    def _stop_bg_reloader() -> None:
        if stop_evt is not None:
            stop_evt.set()
        if thread is not None:
            thread.join(timeout=1.0)

    return _start_bg_reloader, _stop_bg_reloader


def _lifespan_for(
    hooks: tuple[Callable[[], None], Callable[[], None]] | None,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]] | None:
    if hooks is None:
        return None
    start, stop = hooks

    @asynccontextmanager
    async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
        start()
        try:
            yield
        finally:
            stop()

    return _lifespan


_RELOADER_HANDLES: WeakKeyDictionary[FastAPI, tuple[Callable[[], None], Callable[[], None]]] = (
    WeakKeyDictionary()
)


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_validation_error(request: Request, exc: Exception) -> JSONResponse:
    errors = exc.errors() if isinstance(exc, RequestValidationError) else []
    # Upload routes report a malformed multipart body, JSON routes an invalid input
    in_body = any(err.get("loc", ("",))[0] == "body" for err in errors)
    upload = request.url.path == "/v1/classify"
    code = ErrorCode.malformed_multipart if upload and in_body else ErrorCode.invalid_input
    first = errors[0] if errors else {}
    loc = ".".join(str(p) for p in first.get("loc", ()))
    message = f"{loc}: {first.get('msg', 'invalid request')}" if loc else None
    body = new_error(code, request_id_var.get(), message=message)
    return JSONResponse(status_code=status_for(code), content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _create_engine(settings: Settings) -> InferenceEngine:
    engine = InferenceEngine(settings)
    engine.try_load_active()
    return engine


def _register_ui(app: FastAPI) -> None:
    async def _index() -> FileResponse:
        return FileResponse(_STATIC_DIR / "index.html", media_type="text/html")

    # "/" must be registered before the static mount
    app.add_api_route("/", _index, methods=["GET"], include_in_schema=False)
    app.mount("/static", StaticFiles(directory=str(_STATIC_DIR)), name="static")


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        man = engine.manifest
        if engine.ready and man is not None:
            return {"status": "ready"}
        return {
            "status": "not_ready",
            "model_loaded": engine.ready,
            "model_id": engine.model_id,
            "manifest_schema_version": (man.schema_version if man is not None else None),
            "build": get_version().build,
        }

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _register_models(app: FastAPI, engine: InferenceEngine) -> None:
    async def _model_active() -> dict[str, object]:
        recyclable = [name for name in LABELS if name in RECYCLABLE_CLASSES]
        man = engine.manifest
        # Reset state for the page, in the order predictions will arrive
        reset_bars = [
            {"class_name": b.class_name, "value": b.value, "text": b.text}
            for b in empty_bars(man.labels if man is not None else LABELS)
        ]
        if man is None:
            return {
                "model_loaded": False,
                "model_id": None,
                "labels": list(LABELS),
                "recyclable_labels": recyclable,
                "empty_bars": reset_bars,
            }
        return {
            "model_loaded": True,
            "model_id": man.model_id,
            "arch": man.arch,
            "labels": list(man.labels),
            "recyclable_labels": recyclable,
            "empty_bars": reset_bars,
            "image_size": man.image_size,
            "version": man.version,
            "created_at": man.created_at.isoformat(),
            "schema_version": man.schema_version,
            "val_acc": man.val_acc,
            "temperature": man.temperature,
        }

    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _raise_if_too_large(raw: bytes, limits: Limits) -> None:
    if len(raw) > limits.max_bytes:
        raise AppError(ErrorCode.too_large, message="File exceeds size limit")


def _strict_validate_multipart(form: FormData) -> FormFile:
    for key in form:
        if key != "file":
            raise AppError(ErrorCode.malformed_multipart, message="Unexpected form field")
    n_files = len(form.getlist("file"))
    if n_files != 1:
        msg = "Multiple file parts not allowed" if n_files > 1 else "Missing file part"
        raise AppError(ErrorCode.malformed_multipart, message=msg)
    part = form.getlist("file")[0]
    if not isinstance(part, FormFile):
        raise AppError(ErrorCode.malformed_multipart, message="'file' part is not a file")
    return part


def _open_image_bytes(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
        return img
    except UnidentifiedImageError:
        raise AppError(ErrorCode.invalid_image, message="Failed to decode image") from None
    except Image.DecompressionBombError:
        raise AppError(ErrorCode.too_large, message="Decompression bomb triggered") from None
    except OSError:
        raise AppError(ErrorCode.invalid_image, message="Corrupt or truncated image") from None


def _validate_image_dimensions(img: Image.Image, limits: Limits) -> None:
    w, h = img.size
    if max(w, h) > limits.max_side_px:
        raise AppError(ErrorCode.bad_dimensions, message="Image dimensions too large")


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in _SUPPORTED_TYPES:
        raise AppError(ErrorCode.unsupported_media_type)


def _result_payload(
    predictions: Sequence[Prediction], result: RecyclabilityResult, threshold: float
) -> dict[str, object]:
    verdict = verdict_for(result)
    return {
        "result": {
            "is_recyclable": result.is_recyclable,
            "class_name": result.class_name,
            "confidence": result.confidence,
        },
        "verdict": {"text": verdict.text, "style": verdict.style},
        "bars": [
            {"class_name": b.class_name, "value": b.value, "text": b.text}
            for b in probability_bars(predictions)
        ],
        "uncertain": result.confidence < threshold,
    }


def _register_classify(
    app: FastAPI,
    dep_api_key: Callable[[str | None], None],
    provide_engine: Callable[[], InferenceEngine],
    provide_settings: Callable[[], Settings],
    provide_limits: Callable[[], Limits],
) -> None:
    async def _classify_image(
        request: Request,
        file: Annotated[UploadFile | None, File(description="PNG, JPEG or WebP image")] = None,
        preview: bool = False,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        engine = provide_engine()
        settings = provide_settings()
        limits = provide_limits()

        # Exactly one 'file' part and no extras
        form = await request.form()
        upload = _strict_validate_multipart(form)
        _ensure_supported_content_type((upload.content_type or "").lower())

        if content_length is not None and content_length > limits.max_bytes:
            raise AppError(ErrorCode.too_large, message="Request body too large")

        raw = await upload.read()
        _raise_if_too_large(raw, limits)
        img = _open_image_bytes(raw)
        _validate_image_dimensions(img, limits)

        opts = PreprocessOptions(
            image_size=engine.image_size,
            preview=preview,
            preview_max_kb=int(settings.classifier.preview_max_kb),
        )

        t0 = time.perf_counter()
        pre = run_preprocess(img, opts)
        fut = engine.submit_predict(pre.tensor)
        try:
            out = fut.result(timeout=float(settings.classifier.predict_timeout_seconds))
        except FutureTimeout:
            fut.cancel()
            raise AppError(ErrorCode.timeout, message="Prediction timed out") from None
        except RuntimeError as err:
            if "Model not loaded" in str(err):
                raise AppError(ErrorCode.service_not_ready) from None
            raise

        result = classify(out.predictions)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        payload = _result_payload(
            out.predictions, result, float(settings.classifier.uncertain_threshold)
        )
        log_event(
            "classify_finished",
            fields={
                "latency_ms": dt_ms,
                "class_name": result.class_name,
                "confidence": float(result.confidence),
                "recyclable": result.is_recyclable,
                "uncertain": bool(payload["uncertain"]),
                "model_id": out.model_id,
                "source": "upload",
            },
        )
        payload["predictions"] = [
            {"class_name": p.class_name, "probability": float(p.probability)}
            for p in out.predictions
        ]
        payload["model_id"] = out.model_id
        payload["preview_png_b64"] = (
            base64.b64encode(pre.preview_png).decode("ascii") if pre.preview_png else None
        )
        payload["latency_ms"] = dt_ms
        return payload

    async def _recyclability(req: RecyclabilityRequest) -> dict[str, object]:
        settings = provide_settings()
        predictions = [
            Prediction(class_name=p.class_name, probability=float(p.probability))
            for p in req.predictions
        ]
        check_label_set(predictions)
        result = classify(predictions)
        payload = _result_payload(
            predictions, result, float(settings.classifier.uncertain_threshold)
        )
        log_event(
            "recyclability_finished",
            fields={
                "class_name": result.class_name,
                "confidence": float(result.confidence),
                "recyclable": result.is_recyclable,
                "uncertain": bool(payload["uncertain"]),
                "source": "client",
            },
        )
        return payload

    api_dep: DependsParamType = Depends(dep_api_key)

    app.add_api_route(
        "/v1/classify",
        _classify_image,
        methods=["POST"],
        response_model=ClassifyResponse,
        dependencies=[api_dep],
    )
    app.add_api_route(
        "/v1/recyclability",
        _recyclability,
        methods=["POST"],
        response_model=RecyclabilityResponse,
        dependencies=[api_dep],
    )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
    *,
    reload_interval_seconds: float | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads defaults.
    - `engine_provider`: Optional provider for a custom `InferenceEngine` (primarily for tests).
    - `reload_interval_seconds`: When > 0, the app lifespan runs a background thread that
      periodically calls `engine.reload_if_changed()` to pick up model artifact changes.
      Defaults to `settings.app.reload_interval_seconds`.
    """
    s = settings or Settings.load()
    init_logging()
    engine: InferenceEngine = (
        engine_provider() if engine_provider is not None else _create_engine(s)
    )
    interval = (
        reload_interval_seconds
        if reload_interval_seconds is not None
        else s.app.reload_interval_seconds
    )
    hooks = _setup_optional_reloader(engine, interval)

    app = FastAPI(
        title="recyclability-ai", version=get_version().version, lifespan=_lifespan_for(hooks)
    )
    app.add_middleware(RequestIdMiddleware)
    if hooks is not None:
        _RELOADER_HANDLES[app] = hooks
    limits = Limits.from_settings(s)

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(RequestValidationError, _handle_validation_error)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_engine() -> InferenceEngine:
        return engine

    def _provide_settings() -> Settings:
        return s

    def _provide_limits() -> Limits:
        return limits

    _register_ui(app)
    _register_basic(app, engine)
    _register_models(app, engine)
    _register_classify(
        app, api_key_dependency(s), _provide_engine, _provide_settings, _provide_limits
    )
    return app
