from __future__ import annotations

import logging
import math
import os
import time
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import BinaryIO, Dict, List

import numpy as np
from fastapi import FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from grid_sampling import EmptyInputError, GriddedDataError
from gridded_data import (
    CoordinatesUnresolvedError,
    DatasetAdapter,
    DatasetEntry,
    DatasetNotFoundError,
    DatasetStore,
    UnsupportedDimensionsError,
    UpstreamReadError,
    VariableInfo,
    VariableNotFoundError,
    ZarrAdapter,
    is_remote_source,
    open_dataset_adapter,
    visualize_variable,
)

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(500 * 1024 * 1024)))
DEFAULT_MAX_POINTS = int(os.getenv("DEFAULT_MAX_POINTS", "50000"))
UPLOAD_CHUNK_BYTES = 1024 * 1024
STATIC_DIR = Path(os.getenv("STATIC_DIR", "static"))


def _configure_logging() -> logging.Logger:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("grid_viewer")
    logger.setLevel(level)
    if logger.handlers:
        return logger

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(level)
    logger.addHandler(stream_handler)

    log_file = os.getenv("GRID_VIEWER_LOG_FILE", "logs/grid_viewer.log").strip()
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=3)
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

    # xarray and zarr report decoding problems through warnings; route them to the same handlers.
    logging.captureWarnings(True)
    warnings_logger = logging.getLogger("py.warnings")
    for handler in logger.handlers:
        warnings_logger.addHandler(handler)
    warnings_logger.propagate = False

    logger.propagate = False
    logger.info("Logger configured level=%s file=%s", logging.getLevelName(level), log_file or "disabled")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Gridded Data Viewer")


def _allowed_cors_origins() -> List[str]:
    if os.getenv("GRID_VIEWER_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [v.strip() for v in raw.split(",") if v.strip()]
    return [
        "http://127.0.0.1:3000",
        "http://localhost:3000",
        "http://127.0.0.1:8000",
        "http://localhost:8000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["*"],
    allow_headers=["*"],
)

store = DatasetStore()


class LoadUrlRequest(BaseModel):
    url: str


def _resolve_max_points(value) -> int:
    # Direct calls (tests, scripts) receive the Query marker rather than its default.
    if not isinstance(value, (int, str)):
        value = getattr(value, "default", None)
    if value is None:
        return DEFAULT_MAX_POINTS
    try:
        max_points = int(value)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid maxPoints: {value}") from exc
    if max_points <= 0:
        raise HTTPException(status_code=400, detail=f"maxPoints must be positive, got {max_points}")
    return max_points


@app.on_event("startup")
def _startup() -> None:
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    LOGGER.info("App startup upload_dir=%s max_upload_bytes=%d", UPLOAD_DIR, MAX_UPLOAD_BYTES)


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown; releasing %d datasets", len(store))
    store.close_all()


@app.post("/api/upload")
def upload(netcdf: UploadFile = File(...)) -> Dict[str, object]:
    if netcdf is None or not netcdf.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    original_name = Path(netcdf.filename).name
    file_id = f"{int(time.time() * 1000)}-{original_name}"
    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    target = UPLOAD_DIR / file_id
    size = _save_upload(netcdf.file, target)
    LOGGER.info("Upload saved file_id=%s size=%d", file_id, size)

    try:
        adapter = open_dataset_adapter(target, work_dir=UPLOAD_DIR)
    except GriddedDataError as exc:
        LOGGER.warning("Upload open failed file_id=%s: %s", file_id, exc)
        target.unlink(missing_ok=True)
        raise HTTPException(status_code=500, detail=f"Failed to process dataset file: {exc}") from exc

    return _register_dataset(file_id, adapter, filename=original_name, size=size, source_path=target)


@app.post("/api/load-url")
def load_url(request: LoadUrlRequest) -> Dict[str, object]:
    url = request.url.strip()
    if not url:
        raise HTTPException(status_code=400, detail="No URL provided")
    if not is_remote_source(url):
        raise HTTPException(status_code=400, detail=f"Unsupported URL scheme: {url}")
    try:
        adapter = ZarrAdapter.open(url)
    except GriddedDataError as exc:
        LOGGER.warning("Load URL failed url=%s: %s", url, exc)
        raise HTTPException(status_code=500, detail=f"Failed to load Zarr store: {exc}") from exc

    file_id = f"url-{uuid.uuid4().hex[:12]}"
    return _register_dataset(file_id, adapter, filename=url, size=0, source_path=None)


@app.get("/api/data/{file_id}/{variable_name}")
def data(
    file_id: str,
    variable_name: str,
    max_points: str | None = Query(None, alias="maxPoints"),
) -> Dict[str, object]:
    max_points = _resolve_max_points(max_points)
    started = time.perf_counter()
    try:
        with store.lease(file_id) as entry:
            view = visualize_variable(entry, variable_name, max_points)
    except DatasetNotFoundError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc
    except VariableNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Variable not found") from exc
    except (CoordinatesUnresolvedError, UnsupportedDimensionsError) as exc:
        LOGGER.warning("Data request rejected file_id=%s var=%s: %s", file_id, variable_name, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except EmptyInputError as exc:
        LOGGER.warning("No valid data file_id=%s var=%s", file_id, variable_name)
        raise HTTPException(status_code=400, detail="No valid data points found") from exc
    except UpstreamReadError as exc:
        LOGGER.exception("Data extraction failed file_id=%s var=%s", file_id, variable_name)
        raise HTTPException(status_code=500, detail=f"Failed to extract data: {exc}") from exc

    sample = view.sample
    LOGGER.info(
        "Data served file_id=%s var=%s points=%d rate=%d elapsed=%.3fs",
        file_id,
        variable_name,
        len(sample.points),
        sample.sample_rate,
        time.perf_counter() - started,
    )
    return {
        "variable": _variable_payload(view.variable),
        "data": [{"lat": _finite_or_none(p.lat), "lon": _finite_or_none(p.lon), "value": p.value} for p in sample.points],
        "coordinates": {
            "latitude": [_finite_or_none(v) for v in sample.sampled_lat],
            "longitude": [_finite_or_none(v) for v in sample.sampled_lon],
        },
        "statistics": view.statistics.to_dict(),
    }


@app.get("/api/variable/{file_id}/{variable_name}/info")
def variable_info(file_id: str, variable_name: str) -> Dict[str, object]:
    try:
        with store.lease(file_id) as entry:
            info = entry.adapter.variable_info(variable_name)
    except DatasetNotFoundError as exc:
        raise HTTPException(status_code=404, detail="File not found") from exc
    except VariableNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Variable not found") from exc
    return _variable_payload(info)


@app.delete("/api/file/{file_id}")
def delete_file(file_id: str) -> Dict[str, str]:
    removed = store.remove(file_id)
    LOGGER.info("Delete request file_id=%s removed=%s", file_id, removed)
    return {"message": "File deleted successfully"}


@app.get("/api/health")
def api_health() -> Dict[str, object]:
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "activeFiles": len(store),
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


if STATIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="static")


def _save_upload(source: BinaryIO, target: Path) -> int:
    size = 0
    with target.open("wb") as out:
        while True:
            chunk = source.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            size += len(chunk)
            if size > MAX_UPLOAD_BYTES:
                out.close()
                target.unlink(missing_ok=True)
                LOGGER.warning("Upload rejected; exceeds %d bytes target=%s", MAX_UPLOAD_BYTES, target.name)
                raise HTTPException(status_code=400, detail="File too large")
            out.write(chunk)
    return size


def _register_dataset(
    file_id: str,
    adapter: DatasetAdapter,
    filename: str,
    size: int,
    source_path: Path | None,
) -> Dict[str, object]:
    try:
        entry = store.add(file_id, adapter, filename=filename, size=size, source_path=source_path)
    except Exception as exc:
        LOGGER.warning("Dataset registration failed file_id=%s: %s", file_id, exc)
        adapter.close()
        if source_path is not None:
            source_path.unlink(missing_ok=True)
        raise HTTPException(status_code=500, detail=f"Failed to process dataset file: {exc}") from exc
    return _dataset_payload(entry)


def _dataset_payload(entry: DatasetEntry) -> Dict[str, object]:
    adapter = entry.adapter
    coordinates = None
    if entry.coordinates is not None:
        coordinates = {
            role: {
                "name": info.name,
                "range": [_finite_or_none(v) for v in info.range],
                "size": info.size,
            }
            for role, info in entry.coordinates.items()
        }
    return {
        "fileId": entry.dataset_id,
        "filename": entry.filename,
        "size": entry.size,
        "format": adapter.format_name,
        "dimensions": [{"name": d.name, "size": d.size} for d in adapter.list_dimensions()],
        "variables": [_variable_payload(v) for v in adapter.list_variables()],
        "coordinates": coordinates,
    }


def _variable_payload(info: VariableInfo) -> Dict[str, object]:
    return {
        "name": info.name,
        "dimensions": list(info.dimensions),
        "shape": list(info.shape),
        "dtype": info.dtype,
        "type": info.dtype,
        "attributes": {str(k): _json_safe(v) for k, v in info.attributes.items()},
    }


def _finite_or_none(value) -> float | None:
    if value is None:
        return None
    v = float(value)
    return v if math.isfinite(v) else None


def _json_safe(value):
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    if isinstance(value, (int, np.integer)):
        return int(value)
    if isinstance(value, (float, np.floating)):
        return _finite_or_none(value)
    if isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, np.ndarray):
        return [_json_safe(v) for v in value.tolist()]
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    return str(value)
