#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from pathlib import Path

from grid_sampling import GriddedDataError
from gridded_data import DatasetStore, open_dataset_adapter, visualize_variable


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect a NetCDF/Zarr dataset and sample its 2-D variables.")
    parser.add_argument("source", help="NetCDF file, Zarr directory, zipped Zarr store or http(s) Zarr URL")
    parser.add_argument("--variable", action="append", default=[], help="variable to sample (repeatable)")
    parser.add_argument("--max-points", type=int, default=50000)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    store = DatasetStore()
    adapter = open_dataset_adapter(args.source)
    # Never registered with a source path, so closing the store leaves the input untouched.
    entry = store.add("inspect", adapter, filename=Path(str(args.source)).name, size=0)

    dimensions = {d.name: d.size for d in adapter.list_dimensions()}
    rows = []
    try:
        variable_names = args.variable or [
            v.name for v in adapter.list_variables() if v.rank in (2, 3)
        ]
        with store.lease(entry.dataset_id):
            for name in variable_names:
                try:
                    view = visualize_variable(entry, name, args.max_points)
                except GriddedDataError as exc:
                    rows.append({"variable": name, "status": "error", "error": f"{type(exc).__name__}: {exc}"})
                    continue
                rows.append({"variable": name, "status": "ok", "statistics": view.statistics.to_dict()})
    finally:
        store.close_all()

    print(
        json.dumps(
            {
                "source": str(args.source),
                "format": adapter.format_name,
                "dimensions": dimensions,
                "latitude": entry.location.latitude.name,
                "longitude": entry.location.longitude.name,
                "coordinates": {
                    role: {"name": info.name, "range": list(info.range), "size": info.size}
                    for role, info in (entry.coordinates or {}).items()
                },
                "variables": rows,
            },
            indent=2,
        )
    )


if __name__ == "__main__":
    main()
