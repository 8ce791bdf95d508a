"""
Observation data: an ordered sequence of timed records.
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Union


def _is_missing(value) -> bool:
    if value is None:
        return True
    return bool(np.all(np.isnan(np.asarray(value, dtype=np.float64))))


@dataclass
class ObservationData:
    """
    Prepared observation data.

    Attributes:
        time_start: Time the system starts from (<= first record time)
        times: [T] Strictly increasing record times
        records: T mappings of stream name -> observed value; missing
                 values are dropped from the mapping
        streams: All stream names seen in the input
    """
    time_start: float
    times: np.ndarray
    records: List[Dict[str, object]]
    streams: tuple

    def __len__(self) -> int:
        return len(self.times)

    def __iter__(self):
        return iter(zip(self.times, self.records))

    def index_of(self, time: float) -> int:
        """Position of the record at ``time``."""
        i = int(np.searchsorted(self.times, time))
        if i >= len(self.times) or not np.isclose(self.times[i], time):
            raise ValueError(f"No data record at time {time}")
        return i


def prepare_data(
    data: Union[Mapping[str, Sequence], Sequence[Mapping]],
    time_start: Optional[float] = None,
) -> ObservationData:
    """
    Validate and normalise observation data.

    Args:
        data: Either a mapping of columns (must include "time") or a
              sequence of record mappings each with a "time" entry.
              None or NaN marks a missing value.
        time_start: Start time; defaults to the first record time

    Returns:
        ObservationData
    """
    if isinstance(data, ObservationData):
        return data
    if isinstance(data, Mapping):
        if "time" not in data:
            raise ValueError("data must contain a 'time' column")
        n = len(data["time"])
        for name, column in data.items():
            if len(column) != n:
                raise ValueError(
                    f"Column '{name}' has length {len(column)}, expected {n}"
                )
        rows = [{name: data[name][i] for name in data} for i in range(n)]
    else:
        rows = [dict(r) for r in data]
        if any("time" not in r for r in rows):
            raise ValueError("Every data record must have a 'time' entry")
    if len(rows) == 0:
        raise ValueError("data must contain at least one record")

    times = np.array([float(r["time"]) for r in rows])
    if not np.all(np.isfinite(times)):
        raise ValueError("data times must be finite")
    if np.any(np.diff(times) <= 0):
        raise ValueError("data times must be strictly increasing")
    if time_start is None:
        time_start = times[0]
    elif time_start > times[0]:
        raise ValueError(
            f"time_start ({time_start}) must not be later than the first "
            f"data time ({times[0]})"
        )

    streams = []
    records = []
    for r in rows:
        record = {}
        for name, value in r.items():
            if name == "time":
                continue
            if name not in streams:
                streams.append(name)
            if not _is_missing(value):
                record[name] = value
        records.append(record)

    return ObservationData(
        time_start=float(time_start),
        times=times,
        records=records,
        streams=tuple(streams),
    )
