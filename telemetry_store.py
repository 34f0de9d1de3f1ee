"""
Append-only storage of accepted readings.

Readings are keyed by their identity so replays never store a reading
twice. An optional JSON-lines file makes the store durable; it is
rewritten when retention pruning drops old readings.
"""
import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

import pandas as pd

from errors import ConnectivityError
from models import Reading, to_utc, utcnow

logger = logging.getLogger(__name__)


class TelemetryStore:
    """
    Time-series repository of readings.

    Usage:
        store = TelemetryStore(retention_days=90)
        store.append(reading)
        store.recent(10, meter_id="m1")
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, retention_days: int = 90,
                 clock: Callable[[], datetime] = utcnow):
        self.path = Path(path) if path else None
        self.retention_days = retention_days
        self.clock = clock
        self.available = True
        self._readings: Dict[str, Reading] = {}
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        loaded = 0
        with self.path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    reading = Reading.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.error("Skipping corrupt line %d in %s: %s", line_no, self.path, e)
                    continue
                self._readings.setdefault(reading.reading_id, reading)
                loaded += 1
        logger.info("Loaded %d readings from %s", loaded, self.path)

    def set_available(self, available: bool) -> None:
        self.available = available

    def _check_available(self) -> None:
        if not self.available:
            raise ConnectivityError("Telemetry store is unreachable")

    def __len__(self) -> int:
        return len(self._readings)

    def __contains__(self, reading_id: str) -> bool:
        return reading_id in self._readings

    def append(self, reading: Reading) -> bool:
        """
        Store one reading.

        Returns:
            True if the reading was new, False if its identity was already stored

        Raises:
            ConnectivityError: when the store is unavailable
        """
        return self.append_batch([reading]) == 1

    def append_batch(self, readings: Iterable[Reading]) -> int:
        """
        Store a batch of readings atomically.

        Either every new reading in the batch is stored or none is. Readings
        whose identity is already present are skipped.

        Returns:
            Number of readings newly stored
        """
        self._check_available()
        fresh: List[Reading] = []
        seen = set()
        for r in readings:
            if r.reading_id in self._readings or r.reading_id in seen:
                continue
            seen.add(r.reading_id)
            fresh.append(r)
        if not fresh:
            return 0

        if self.path:
            payload = "".join(json.dumps(r.to_dict()) + "\n" for r in fresh)
            try:
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(payload)
            except OSError as e:
                raise ConnectivityError(f"Cannot write to {self.path}: {e}") from e

        for r in fresh:
            self._readings[r.reading_id] = r
        return len(fresh)

    def _select(self, meter_id: Optional[str], device_id: Optional[str]) -> List[Reading]:
        self._check_available()
        rows = [
            r for r in self._readings.values()
            if (meter_id is None or r.meter_id == meter_id)
            and (device_id is None or r.device_id == device_id)
        ]
        # Arrival order may differ from timestamp order
        rows.sort(key=lambda r: r.timestamp)
        return rows

    def all(self, meter_id: Optional[str] = None, device_id: Optional[str] = None) -> List[Reading]:
        return self._select(meter_id, device_id)

    def recent(self, n: int, meter_id: Optional[str] = None,
               device_id: Optional[str] = None) -> List[Reading]:
        """Most recent n readings, oldest first."""
        if n <= 0:
            return []
        return self._select(meter_id, device_id)[-n:]

    def between(self, start, end, meter_id: Optional[str] = None,
                device_id: Optional[str] = None) -> List[Reading]:
        """Readings with start <= timestamp <= end, oldest first."""
        start, end = to_utc(start), to_utc(end)
        return [r for r in self._select(meter_id, device_id) if start <= r.timestamp <= end]

    def since(self, days: float, meter_id: Optional[str] = None,
              device_id: Optional[str] = None) -> List[Reading]:
        now = self.clock()
        return self.between(now - timedelta(days=days), now, meter_id, device_id)

    def retention_cutoff(self) -> datetime:
        return self.clock() - timedelta(days=self.retention_days)

    def prune(self) -> int:
        """
        Drop readings older than the retention window.

        Raises:
            ConnectivityError: when the store is unavailable
        """
        self._check_available()
        cutoff = self.retention_cutoff()
        stale = [rid for rid, r in self._readings.items() if r.timestamp < cutoff]
        if not stale:
            return 0
        for rid in stale:
            del self._readings[rid]
        if self.path:
            self._rewrite()
        logger.info("Pruned %d readings older than %s", len(stale), cutoff.isoformat())
        return len(stale)

    def _rewrite(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            for r in sorted(self._readings.values(), key=lambda r: r.timestamp):
                f.write(json.dumps(r.to_dict()) + "\n")
        tmp.replace(self.path)

    @staticmethod
    def to_frame(readings: List[Reading]) -> pd.DataFrame:
        """Tidy DataFrame of readings, one row per sample."""
        columns = ["reading_id", "meter_id", "device_id", "timestamp", "power", "voltage",
                   "current", "frequency", "power_factor", "consumption", "quality",
                   "quality_score"]
        if not readings:
            return pd.DataFrame(columns=columns)
        df = pd.DataFrame([
            (r.reading_id, r.meter_id, r.device_id, r.timestamp, r.power, r.voltage,
             r.current, r.frequency, r.power_factor, r.consumption, r.quality,
             r.quality_score)
            for r in readings
        ], columns=columns)
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        return df
