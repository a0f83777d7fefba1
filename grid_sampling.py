from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Sequence, Tuple

import numpy as np

SENTINEL_ABS_THRESHOLD = 1e30
LATITUDE = "latitude"
LONGITUDE = "longitude"
LOGGER = logging.getLogger("grid_viewer.grid_sampling")


class GriddedDataError(RuntimeError):
    """Base class for dataset inspection and reduction failures."""


class EmptyInputError(GriddedDataError):
    """Raised when no valid data points remain after filtering."""


@dataclass(frozen=True)
class SampledPoint:
    lat: float
    lon: float
    value: float


@dataclass(frozen=True)
class SampleResult:
    points: List[SampledPoint]
    sampled_lat: List[float]
    sampled_lon: List[float]
    sample_rate: int
    total_points: int


@dataclass(frozen=True)
class Statistics:
    min: float
    max: float
    mean: float
    count: int
    total_points: int
    sample_rate: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "min": self.min,
            "max": self.max,
            "mean": self.mean,
            "count": self.count,
            "totalPoints": self.total_points,
            "sampleRate": self.sample_rate,
        }


@dataclass(frozen=True)
class CoordinateMatch:
    role: str
    name: str | None = None
    rule: str | None = None

    @property
    def matched(self) -> bool:
        return self.name is not None


@dataclass(frozen=True)
class CoordinateLocation:
    latitude: CoordinateMatch
    longitude: CoordinateMatch

    @property
    def resolved(self) -> bool:
        return self.latitude.matched and self.longitude.matched


# role -> (substring, exact axis name)
_NAME_HINTS: Dict[str, Tuple[str, str]] = {
    LATITUDE: ("lat", "y"),
    LONGITUDE: ("lon", "x"),
}


def _standard_name_rule(role: str, name: str, attributes: Mapping[str, object]) -> bool:
    return attributes.get("standard_name") == role


def _axis_name_rule(role: str, name: str, attributes: Mapping[str, object]) -> bool:
    return name.lower() == _NAME_HINTS[role][1]


def _substring_rule(role: str, name: str, attributes: Mapping[str, object]) -> bool:
    return _NAME_HINTS[role][0] in name.lower()


# Evaluated in order. Rules inside one tier compete on candidate order, so the
# first variable satisfying any of them wins; an earlier tier always beats a
# later one.
COORDINATE_RULE_TIERS: Tuple[Tuple[Tuple[str, Callable[[str, str, Mapping[str, object]], bool]], ...], ...] = (
    (("standard_name", _standard_name_rule),),
    (("exact", _axis_name_rule), ("substring", _substring_rule)),
)


def match_coordinate(
    role: str,
    variable_names: Sequence[str],
    metadata_by_name: Mapping[str, Mapping[str, object]] | None = None,
) -> CoordinateMatch:
    """Resolve the variable holding ``role`` ("latitude" or "longitude").

    Purely name and attribute based. Unconventional names are not handled and
    substring matches are accepted as-is (``rlat`` resolves to latitude).
    """
    if role not in _NAME_HINTS:
        raise ValueError(f"Unknown coordinate role: {role}")
    metadata_by_name = metadata_by_name or {}
    for tier in COORDINATE_RULE_TIERS:
        for name in variable_names:
            attributes = metadata_by_name.get(name) or {}
            for rule_name, rule in tier:
                if rule(role, str(name), attributes):
                    return CoordinateMatch(role=role, name=name, rule=rule_name)
    return CoordinateMatch(role=role)


def locate_coordinates(
    variable_names: Sequence[str],
    metadata_by_name: Mapping[str, Mapping[str, object]] | None = None,
) -> CoordinateLocation:
    names = list(variable_names)
    location = CoordinateLocation(
        latitude=match_coordinate(LATITUDE, names, metadata_by_name),
        longitude=match_coordinate(LONGITUDE, names, metadata_by_name),
    )
    LOGGER.debug(
        "Located coordinates latitude=%s (%s) longitude=%s (%s)",
        location.latitude.name,
        location.latitude.rule,
        location.longitude.name,
        location.longitude.rule,
    )
    return location


def _as_float_array(values) -> np.ndarray:
    if isinstance(values, np.ma.MaskedArray):
        return values.astype(np.float64).filled(np.nan)
    # None becomes NaN under a float dtype.
    return np.asarray(values, dtype=np.float64)


def valid_value_mask(values) -> np.ndarray:
    arr = _as_float_array(values)
    with np.errstate(invalid="ignore"):
        return np.isfinite(arr) & (np.abs(arr) < SENTINEL_ABS_THRESHOLD)


def compute_sample_rate(total_points: int, max_points: int) -> int:
    if int(max_points) <= 0:
        raise ValueError(f"max_points must be positive, got {max_points}")
    return max(1, -(-int(total_points) // int(max_points)))


def sample_grid(flat_values, lat_axis, lon_axis, max_points: int) -> SampleResult:
    """Reduce a row-major H x W grid to at most about ``max_points`` points.

    Rows and columns are both visited with the same integer stride, so the
    candidate set is ``ceil(H/rate) * ceil(W/rate)`` cells. Invalid values are
    dropped after the stride is applied; the returned coordinate vectors are
    not affected by value filtering.
    """
    lat = np.asarray(lat_axis, dtype=np.float64).reshape(-1)
    lon = np.asarray(lon_axis, dtype=np.float64).reshape(-1)
    height, width = int(lat.size), int(lon.size)
    total_points = height * width
    values = _as_float_array(flat_values).reshape(-1)
    if values.size != total_points:
        raise ValueError(
            f"Grid has {values.size} values but coordinates describe {height}x{width}={total_points} cells"
        )
    sample_rate = compute_sample_rate(total_points, max_points)

    sampled_lat = lat[::sample_rate]
    sampled_lon = lon[::sample_rate] if height > 0 else lon[:0]
    if total_points == 0:
        return SampleResult([], sampled_lat.tolist(), sampled_lon.tolist(), sample_rate, total_points)

    grid = values.reshape(height, width)[::sample_rate, ::sample_rate]
    rows, cols = np.nonzero(valid_value_mask(grid))
    points = [
        SampledPoint(lat=la, lon=lo, value=v)
        for la, lo, v in zip(
            sampled_lat[rows].tolist(),
            sampled_lon[cols].tolist(),
            grid[rows, cols].tolist(),
        )
    ]
    LOGGER.debug(
        "Sampled grid %dx%d max_points=%d rate=%d candidates=%d valid=%d",
        height,
        width,
        max_points,
        sample_rate,
        grid.size,
        len(points),
    )
    return SampleResult(points, sampled_lat.tolist(), sampled_lon.tolist(), sample_rate, total_points)


def summarize(points: Sequence[SampledPoint], total_points: int, sample_rate: int) -> Statistics:
    if not points:
        raise EmptyInputError("No valid data points found")
    values = np.fromiter((p.value for p in points), dtype=np.float64, count=len(points))
    return Statistics(
        min=float(values.min()),
        max=float(values.max()),
        mean=float(values.mean()),
        count=int(values.size),
        total_points=int(total_points),
        sample_rate=int(sample_rate),
    )
