"""
Rolling per-device and per-meter statistics.

Statistics are a cache over the telemetry store: every figure can be
rebuilt by replaying the stored readings through `rebuild`.
"""
import logging
from datetime import datetime
from typing import Collection, Dict, Iterable, Optional

from errors import StatisticsUpdateFailure
from models import Device, DeviceStatistics, Meter, MeterStatistics, Reading

logger = logging.getLogger(__name__)


class StatisticsAggregator:
    """Incrementally maintained consumption, power and cost totals."""

    def __init__(self, tariff_rate: float = 0.12, samples_per_day: int = 24,
                 max_operating_gap_hours: float = 1.0):
        self.tariff_rate = tariff_rate
        self.samples_per_day = samples_per_day
        self.max_operating_gap_hours = max_operating_gap_hours
        # reading identity -> timestamp of every reading counted so far
        self._applied: Dict[str, datetime] = {}

    def has_applied(self, reading_id: str) -> bool:
        return reading_id in self._applied

    @property
    def tracked(self) -> int:
        return len(self._applied)

    def forget_before(self, cutoff: datetime, keep: Collection[str] = ()) -> int:
        """
        Stop tracking identities of readings older than the retention cutoff.

        Totals are unaffected. Identities in `keep` (readings still waiting
        in the offline queue) are retained.

        Returns:
            Number of identities dropped
        """
        expired = [rid for rid, ts in self._applied.items() if ts < cutoff and rid not in keep]
        for rid in expired:
            del self._applied[rid]
        if expired:
            logger.info("Forgot %d reading identities older than %s", len(expired), cutoff.isoformat())
        return len(expired)

    def apply(self, reading: Reading, meter: Meter, device: Optional[Device] = None) -> bool:
        """
        Fold one reading into its meter's and device's statistics.

        Returns:
            False if the reading was already counted

        Raises:
            StatisticsUpdateFailure: when the reading does not belong to the
                given meter or device
        """
        if reading.reading_id in self._applied:
            return False
        if reading.meter_id != meter.meter_id:
            raise StatisticsUpdateFailure(
                f"Reading {reading.reading_id} belongs to meter {reading.meter_id}, not {meter.meter_id}"
            )
        if device is not None and reading.device_id != device.device_id:
            raise StatisticsUpdateFailure(
                f"Reading {reading.reading_id} belongs to device {reading.device_id}, not {device.device_id}"
            )

        self._update_meter(meter.statistics, reading)
        if device is not None:
            self._update_device(device.statistics, reading)
        self._applied[reading.reading_id] = reading.timestamp
        return True

    def _update_meter(self, stats: MeterStatistics, reading: Reading) -> None:
        stats.reading_count += 1
        stats.total_energy_consumed += reading.consumption
        stats.peak_usage = max(stats.peak_usage, reading.power)
        stats.cost_to_date += reading.consumption * self.tariff_rate
        days = max(1.0, stats.reading_count / self.samples_per_day)
        stats.average_daily_usage = stats.total_energy_consumed / days

    def _update_device(self, stats: DeviceStatistics, reading: Reading) -> None:
        stats.reading_count += 1
        stats.total_energy_consumed += reading.consumption
        # Running mean over every reading counted so far
        stats.average_power_usage += (reading.power - stats.average_power_usage) / stats.reading_count
        stats.peak_power_usage = max(stats.peak_power_usage, reading.power)

        if stats.last_reading is None:
            stats.last_reading = reading.timestamp
        elif reading.timestamp > stats.last_reading:
            gap = (reading.timestamp - stats.last_reading).total_seconds() / 3600
            stats.operating_hours += min(gap, self.max_operating_gap_hours)
            stats.last_reading = reading.timestamp

    def rebuild(self, readings: Iterable[Reading], meters: Dict[str, Meter],
                devices: Dict[str, Device]) -> int:
        """
        Recompute all statistics from stored readings.

        Readings for unknown meters are skipped; readings for unknown devices
        still count towards their meter.

        Returns:
            Number of readings applied
        """
        self._applied.clear()
        for meter in meters.values():
            meter.statistics = MeterStatistics()
        for device in devices.values():
            device.statistics = DeviceStatistics()

        applied = 0
        for reading in sorted(readings, key=lambda r: r.timestamp):
            meter = meters.get(reading.meter_id)
            if meter is None:
                continue
            device = devices.get(reading.device_id) if reading.device_id else None
            if self.apply(reading, meter, device):
                applied += 1
        logger.info("Rebuilt statistics from %d readings", applied)
        return applied
