"""Export measurement results as JSON or CSV.

Supported results are `CountData`, `RateMeasurement` and
`CoincidenceMeasurement`. Each exported record carries a `type` and an ISO
8601 `timestamp` (the export time unless one is given).

JSON keeps the nested structure:

```json
[
  {
    "type": "rate",
    "timestamp": "2025-01-01T12:00:00",
    "channel": 0,
    "counts": 1000,
    ...
    "uncertainty": {"counts": 31.6, "rate": 31.6, "relative": 3.16}
  }
]
```

CSV flattens it: uncertainty fields become `uncertainty_<name>` columns and
per-channel counts become `count_<n>` columns.
"""

from __future__ import annotations

import csv
import io
import os
from datetime import datetime
from typing import Any, Sequence

import numpy as np
import simplejson as json
from loguru import logger

from cd48.types.measurements import CoincidenceMeasurement, CountData, RateMeasurement

Measurement = CountData | RateMeasurement | CoincidenceMeasurement

EXPORT_FORMATS = ("json", "csv")


class NumpyEncoder(json.JSONEncoder):
    """Special json encoder for numpy types"""

    def default(self, o):
        if isinstance(o, np.integer):
            return int(o)
        if isinstance(o, np.floating):
            return float(o)
        if isinstance(o, np.ndarray):
            return o.tolist()
        return json.JSONEncoder.default(self, o)


def _measurement_type(measurement: Measurement) -> str:
    if isinstance(measurement, CountData):
        return "counts"
    if isinstance(measurement, RateMeasurement):
        return "rate"
    if isinstance(measurement, CoincidenceMeasurement):
        return "coincidence"
    raise TypeError(f"Cannot export object of type {type(measurement).__name__}")


def to_record(measurement: Measurement, timestamp: str | None = None) -> dict[str, Any]:
    """Nested dict for one measurement, with `type` and `timestamp` added."""
    record = {
        "type": _measurement_type(measurement),
        "timestamp": timestamp or datetime.now().isoformat(timespec="seconds"),
    }
    data = measurement.to_dict()
    if isinstance(measurement, CountData):
        data["counts"] = list(data["counts"])
    record.update(data)
    return record


def flatten_record(record: dict[str, Any]) -> dict[str, Any]:
    flat = {}
    for key, value in record.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flat[f"{key}_{sub_key}"] = sub_value
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                flat[f"count_{i}"] = item
        else:
            flat[key] = value
    return flat


def to_json(
    measurements: Measurement | Sequence[Measurement], timestamp: str | None = None
) -> str:
    """JSON array of measurement records (indent 2)."""
    records = [to_record(m, timestamp) for m in _as_list(measurements)]
    return json.dumps(records, cls=NumpyEncoder, indent=2)


def to_csv(
    measurements: Measurement | Sequence[Measurement], timestamp: str | None = None
) -> str:
    """CSV with one row per measurement, header from the union of columns."""
    rows = [flatten_record(to_record(m, timestamp)) for m in _as_list(measurements)]
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue()


def save_measurements(
    path: str,
    measurements: Measurement | Sequence[Measurement],
    fmt: str | None = None,
) -> str:
    """Write measurements to `path`; format from `fmt` or the file extension.

    Returns
    -------
    str
        The absolute path written.
    """
    if fmt is None:
        fmt = os.path.splitext(path)[1].lstrip(".").lower() or "json"
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unknown export format '{fmt}', use one of {EXPORT_FORMATS}")
    text = to_json(measurements) if fmt == "json" else to_csv(measurements)
    path = os.path.abspath(path)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", newline="") as f:
        f.write(text)
    logger.info("Saved {} measurement(s) to {}", len(_as_list(measurements)), path)
    return path


def _as_list(measurements) -> list:
    if isinstance(measurements, (CountData, RateMeasurement, CoincidenceMeasurement)):
        return [measurements]
    return list(measurements)
