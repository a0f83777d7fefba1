from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
import zipfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Tuple

import numpy as np
import xarray as xr

from grid_sampling import (
    CoordinateLocation,
    GriddedDataError,
    SampleResult,
    Statistics,
    locate_coordinates,
    sample_grid,
    summarize,
)

ZARR_MARKERS = (".zmetadata", ".zgroup", "zarr.json")
REMOTE_PREFIXES = ("http://", "https://")
LOGGER = logging.getLogger("grid_viewer.gridded_data")


class DatasetNotFoundError(GriddedDataError):
    """Raised when no dataset is registered under the requested id."""


class VariableNotFoundError(GriddedDataError):
    """Raised when a dataset has no variable with the requested name."""


class CoordinatesUnresolvedError(GriddedDataError):
    """Raised when latitude/longitude variables cannot be identified."""


class UnsupportedDimensionsError(GriddedDataError):
    """Raised when a variable cannot be reduced to a lat/lon slab."""


class UpstreamReadError(GriddedDataError):
    """Raised when the underlying format library fails to open or read."""


@dataclass(frozen=True)
class Dimension:
    name: str
    size: int


@dataclass(frozen=True)
class VariableInfo:
    name: str
    dimensions: Tuple[str, ...]
    shape: Tuple[int, ...]
    dtype: str
    attributes: Dict[str, object]

    @property
    def rank(self) -> int:
        return len(self.shape)


@dataclass(frozen=True)
class CoordinateInfo:
    name: str
    range: Tuple[float | None, float | None]
    size: int


class DatasetAdapter(ABC):
    """Read-only view over an opened gridded dataset.

    Subclasses only decide how the xarray dataset is opened; listing and
    slab extraction are shared. A handle is never mutated after open, so
    concurrent reads need no locking.
    """

    format_name = "unknown"

    def __init__(self, dataset: xr.Dataset, source: str, cleanup_dir: Path | None = None) -> None:
        self._dataset = dataset
        self.source = source
        self._cleanup_dir = cleanup_dir
        self._closed = False

    @classmethod
    @abstractmethod
    def open(cls, source: str | os.PathLike, cleanup_dir: Path | None = None) -> "DatasetAdapter":
        ...

    def list_dimensions(self) -> List[Dimension]:
        return [Dimension(name=str(name), size=int(size)) for name, size in self._dataset.sizes.items()]

    def variable_names(self) -> List[str]:
        return [str(name) for name in self._dataset.variables]

    def list_variables(self) -> List[VariableInfo]:
        return [self.variable_info(name) for name in self.variable_names()]

    def has_variable(self, name: str) -> bool:
        return name in self._dataset.variables

    def variable_info(self, name: str) -> VariableInfo:
        variable = self._variable(name)
        return VariableInfo(
            name=name,
            dimensions=tuple(str(d) for d in variable.dims),
            shape=tuple(int(s) for s in variable.shape),
            dtype=str(variable.dtype),
            attributes=dict(variable.attrs),
        )

    def read_slice(self, name: str) -> Tuple[np.ndarray, Tuple[int, int]]:
        """Return the variable's lat/lon slab flattened row-major, plus its shape.

        Rank 3 variables are read at index 0 of the leading axis (usually
        time); rank 2 variables are read whole.
        """
        variable = self._variable(name)
        if variable.ndim == 3:
            slab = variable.isel({variable.dims[0]: 0})
        elif variable.ndim == 2:
            slab = variable
        else:
            raise UnsupportedDimensionsError(
                f"Unsupported variable dimensions: {name} has rank {variable.ndim}, expected 2 or 3"
            )
        try:
            values = np.ma.filled(np.ma.asarray(slab.values, dtype=np.float64), np.nan)
        except GriddedDataError:
            raise
        except (OSError, ValueError, KeyError, TypeError, RuntimeError) as exc:
            raise UpstreamReadError(f"Failed to read variable {name}: {exc}") from exc
        height, width = (int(s) for s in values.shape)
        return values.reshape(-1), (height, width)

    def read_coordinate(self, name: str) -> np.ndarray:
        variable = self._variable(name)
        try:
            return np.ma.filled(np.ma.asarray(variable.values, dtype=np.float64), np.nan)
        except GriddedDataError:
            raise
        except (OSError, ValueError, KeyError, TypeError, RuntimeError) as exc:
            raise UpstreamReadError(f"Failed to read coordinate {name}: {exc}") from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._dataset.close()
        finally:
            if self._cleanup_dir is not None:
                shutil.rmtree(self._cleanup_dir, ignore_errors=True)

    def _variable(self, name: str) -> xr.Variable:
        try:
            return self._dataset.variables[name]
        except KeyError as exc:
            raise VariableNotFoundError(f"Variable not found: {name}") from exc


class NetCDFAdapter(DatasetAdapter):
    format_name = "netcdf"

    @classmethod
    def open(cls, source: str | os.PathLike, cleanup_dir: Path | None = None) -> "NetCDFAdapter":
        try:
            dataset = xr.open_dataset(source, engine="netcdf4", decode_times=False)
        except (OSError, ValueError, KeyError, RuntimeError) as exc:
            raise UpstreamReadError(f"Failed to open NetCDF dataset {source}: {exc}") from exc
        LOGGER.info("Opened NetCDF dataset source=%s", source)
        return cls(dataset, str(source), cleanup_dir=cleanup_dir)


class ZarrAdapter(DatasetAdapter):
    format_name = "zarr"

    @classmethod
    def open(cls, source: str | os.PathLike, cleanup_dir: Path | None = None) -> "ZarrAdapter":
        try:
            # consolidated=None tries .zmetadata first and falls back to a scan;
            # chunks=None keeps variables lazily indexed without dask.
            dataset = xr.open_zarr(source, consolidated=None, chunks=None, decode_times=False)
        except (OSError, ValueError, KeyError, RuntimeError) as exc:
            if cleanup_dir is not None:
                shutil.rmtree(cleanup_dir, ignore_errors=True)
            raise UpstreamReadError(f"Failed to open Zarr store {source}: {exc}") from exc
        LOGGER.info("Opened Zarr store source=%s", source)
        return cls(dataset, str(source), cleanup_dir=cleanup_dir)


def is_remote_source(source: str) -> bool:
    return str(source).lower().startswith(REMOTE_PREFIXES)


def find_zarr_root(directory: Path) -> Path | None:
    candidates = sorted(
        (p for p in [directory, *directory.rglob("*")] if p.is_dir()),
        key=lambda p: (len(p.relative_to(directory).parts), str(p)),
    )
    for candidate in candidates:
        if any((candidate / marker).exists() for marker in ZARR_MARKERS):
            return candidate
    return None


def extract_archive(archive_path: Path, target_dir: Path) -> Path:
    """Unpack a zipped Zarr store and return the store root inside ``target_dir``."""
    target_dir = Path(target_dir).resolve()
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.infolist():
                destination = (target_dir / member.filename).resolve()
                if destination != target_dir and target_dir not in destination.parents:
                    raise UpstreamReadError(f"Archive member escapes extraction directory: {member.filename}")
            archive.extractall(target_dir)
    except zipfile.BadZipFile as exc:
        raise UpstreamReadError(f"Corrupt archive {archive_path.name}: {exc}") from exc
    root = find_zarr_root(target_dir)
    if root is None:
        raise UpstreamReadError(f"Archive {archive_path.name} does not contain a Zarr store")
    return root


def open_dataset_adapter(source: str | os.PathLike, work_dir: Path | None = None) -> DatasetAdapter:
    source_str = str(source)
    if is_remote_source(source_str):
        return ZarrAdapter.open(source_str)

    path = Path(source)
    if path.suffix.lower() == ".zip":
        extract_dir = Path(tempfile.mkdtemp(prefix="zarr_", dir=str(work_dir) if work_dir else None))
        try:
            root = extract_archive(path, extract_dir)
        except GriddedDataError:
            shutil.rmtree(extract_dir, ignore_errors=True)
            raise
        LOGGER.info("Extracted archive %s to %s", path.name, root)
        return ZarrAdapter.open(root, cleanup_dir=extract_dir)
    if path.is_dir() or path.suffix.lower() == ".zarr":
        return ZarrAdapter.open(path)
    return NetCDFAdapter.open(path)


@dataclass
class DatasetEntry:
    dataset_id: str
    adapter: DatasetAdapter
    filename: str
    size: int
    source_path: Path | None
    location: CoordinateLocation
    coordinates: Dict[str, CoordinateInfo] | None = None
    coordinate_values: Dict[str, np.ndarray] = field(default_factory=dict)
    readers: int = 0
    removed: bool = False


@dataclass(frozen=True)
class VariableView:
    variable: VariableInfo
    sample: SampleResult
    statistics: Statistics


def _value_range(values: np.ndarray) -> Tuple[float | None, float | None]:
    finite = values[np.isfinite(values)]
    if finite.size == 0:
        return (None, None)
    return (float(finite.min()), float(finite.max()))


class DatasetStore:
    """Upload id -> opened dataset handle map.

    Reads take a lease that counts the entry's active readers. ``remove``
    unlinks the entry immediately so no new lease can start, and the handle
    is closed (and its backing files deleted) only once the reader count
    drops to zero.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, DatasetEntry] = {}
        self._guard = threading.Lock()

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def add(
        self,
        dataset_id: str,
        adapter: DatasetAdapter,
        filename: str,
        size: int,
        source_path: Path | None = None,
    ) -> DatasetEntry:
        variables = adapter.list_variables()
        location = locate_coordinates(
            [v.name for v in variables],
            {v.name: v.attributes for v in variables},
        )
        entry = DatasetEntry(
            dataset_id=dataset_id,
            adapter=adapter,
            filename=filename,
            size=int(size),
            source_path=source_path,
            location=location,
        )
        if location.resolved:
            coordinates: Dict[str, CoordinateInfo] = {}
            for match in (location.latitude, location.longitude):
                values = adapter.read_coordinate(match.name)
                entry.coordinate_values[match.role] = values
                coordinates[match.role] = CoordinateInfo(
                    name=match.name,
                    range=_value_range(values),
                    size=int(values.size),
                )
            entry.coordinates = coordinates
        else:
            LOGGER.warning(
                "Coordinates unresolved dataset=%s latitude=%s longitude=%s",
                dataset_id,
                location.latitude.name,
                location.longitude.name,
            )

        with self._guard:
            if dataset_id in self._entries:
                raise ValueError(f"Dataset id already registered: {dataset_id}")
            self._entries[dataset_id] = entry
        LOGGER.info("Registered dataset id=%s format=%s variables=%d", dataset_id, adapter.format_name, len(variables))
        return entry

    @contextmanager
    def lease(self, dataset_id: str) -> Iterator[DatasetEntry]:
        with self._guard:
            entry = self._entries.get(dataset_id)
            if entry is None:
                raise DatasetNotFoundError(f"File not found: {dataset_id}")
            entry.readers += 1
        try:
            yield entry
        finally:
            with self._guard:
                entry.readers -= 1
                release = entry.removed and entry.readers == 0
            if release:
                self._release(entry)

    def remove(self, dataset_id: str) -> bool:
        with self._guard:
            entry = self._entries.pop(dataset_id, None)
            if entry is None:
                return False
            entry.removed = True
            release = entry.readers == 0
        if release:
            self._release(entry)
        else:
            LOGGER.info("Deferred close dataset=%s readers=%d", dataset_id, entry.readers)
        return True

    def close_all(self) -> None:
        with self._guard:
            dataset_ids = list(self._entries)
        for dataset_id in dataset_ids:
            self.remove(dataset_id)

    def _release(self, entry: DatasetEntry) -> None:
        try:
            entry.adapter.close()
        except (OSError, RuntimeError) as exc:
            LOGGER.warning("Could not close dataset %s: %s", entry.dataset_id, exc)
        if entry.source_path is not None:
            self._safe_remove(entry.source_path)
        LOGGER.info("Released dataset id=%s", entry.dataset_id)

    @staticmethod
    def _safe_remove(path: Path) -> None:
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not delete %s: %s", path, exc)


def visualize_variable(entry: DatasetEntry, variable_name: str, max_points: int) -> VariableView:
    adapter = entry.adapter
    if not adapter.has_variable(variable_name):
        raise VariableNotFoundError(f"Variable not found: {variable_name}")
    variable = adapter.variable_info(variable_name)
    if variable.rank not in (2, 3):
        raise UnsupportedDimensionsError(
            f"Unsupported variable dimensions: {variable_name} has rank {variable.rank}, expected 2 or 3"
        )
    if entry.coordinates is None:
        raise CoordinatesUnresolvedError("Coordinate variables not found")

    lat = entry.coordinate_values["latitude"]
    lon = entry.coordinate_values["longitude"]
    if lat.ndim != 1 or lon.ndim != 1:
        raise CoordinatesUnresolvedError(
            f"Coordinate variables must be one-dimensional, got latitude {lat.shape} longitude {lon.shape}"
        )

    flat_values, (height, width) = adapter.read_slice(variable_name)
    if (height, width) != (lat.size, lon.size):
        raise UnsupportedDimensionsError(
            f"Variable {variable_name} slab {height}x{width} does not match "
            f"coordinates {lat.size}x{lon.size}"
        )

    sample = sample_grid(flat_values, lat, lon, max_points)
    statistics = summarize(sample.points, sample.total_points, sample.sample_rate)
    LOGGER.debug(
        "Visualized dataset=%s var=%s rate=%d count=%d total=%d",
        entry.dataset_id,
        variable_name,
        statistics.sample_rate,
        statistics.count,
        statistics.total_points,
    )
    return VariableView(variable=variable, sample=sample, statistics=statistics)
