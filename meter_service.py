"""
Smart meter service: ingestion, offline buffering, subscriptions,
monitoring timers and periodic analytics.

Every dependency (store, queue, network state, clock, scheduler, random
generator) is injected, so several services can coexist in one process.
"""
import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import numpy as np

import anomaly_detection
import energy_analysis
from conditions import check_alerts
from config import merge_config
from data_quality import DataQualityMetrics, build_reading, meter_quality, summarize_readings
from errors import (
    AnomalyDetected, ConnectivityError, QualityDegraded, StatisticsUpdateFailure,
    SyncFailure, TelemetryError, UnknownEntityError, ValidationError,
)
from models import (
    DEVICE_TYPES, EFFICIENCY_RATINGS, BenchmarkComparison, CarbonFootprintAnalysis,
    ConsumptionPattern, CostAnalysis, Device, EfficiencyScore, EnergyTrend, Insight,
    Meter, MeterConfiguration, MeterReading, PredictiveInsight, Reading, utcnow,
)
from offline_queue import OfflineSyncQueue
from scheduler import ReentrancyGuard, Scheduler
from telemetry_store import TelemetryStore
from usage_statistics import StatisticsAggregator

logger = logging.getLogger(__name__)

SYNC_TIMER = "offline-sync"
ANALYTICS_TIMER = "analytics"


class NetworkState:
    """Connectivity source. Listeners are told about every transition."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Callable[[bool], None]] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        self._listeners.append(callback)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Network %s", "restored" if online else "lost")
        for callback in list(self._listeners):
            callback(online)


@dataclass
class IngestResult:
    """Outcome of recording one reading."""
    reading: Reading
    stored: bool = False
    queued: bool = False
    duplicate: bool = False
    notices: List[TelemetryError] = field(default_factory=list)


@dataclass
class AnalyticsSnapshot:
    """Derived artifacts of one analytics cycle; rebuildable at any time."""
    meter_id: Optional[str]
    generated_at: datetime
    data_points: int
    patterns: List[ConsumptionPattern]
    trends: List[EnergyTrend]
    benchmarks: List[BenchmarkComparison]
    insights: List[Insight]
    predictions: List[PredictiveInsight]
    efficiency: EfficiencyScore
    costs: CostAnalysis
    carbon: CarbonFootprintAnalysis


def generate_simulated_reading(device: Device, now: datetime, rng: np.random.Generator,
                               interval_hours: float) -> Dict[str, Any]:
    """Plausible raw reading for an active device."""
    base = device.power_rating or 100
    variation = 0.1 + rng.random() * 0.2
    time_variation = math.sin(now.timestamp() / 3600) * 0.3
    power = base * (1 + variation + time_variation)
    return {
        "timestamp": now,
        "power": power,
        "voltage": 120 + rng.random() * 10 - 5,
        "current": (base / 120) * (1 + variation),
        "frequency": 60 + rng.random() * 0.2 - 0.1,
        "powerFactor": 0.85 + rng.random() * 0.1,
        "consumptionDelta": power * interval_hours / 1000,
        "deviceId": device.device_id,
        "meterId": device.meter_id,
    }


class SmartMeterService:
    """
    Entry point for the surrounding application.

    Usage:
        service = SmartMeterService()
        meter = service.register_meter("user-1")
        service.record_reading({...}, meter.meter_id)
        service.scheduler.run_pending()
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 store: Optional[TelemetryStore] = None,
                 queue: Optional[OfflineSyncQueue] = None,
                 network: Optional[NetworkState] = None,
                 clock: Callable[[], datetime] = utcnow,
                 scheduler: Optional[Scheduler] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = merge_config(config or {})
        meter_cfg = self.config["meter"]

        self.clock = clock
        self.store = store or TelemetryStore(
            path=self.config["telemetry_store"]["path"],
            retention_days=meter_cfg["data_retention_days"],
            clock=clock,
        )
        self.queue = queue or OfflineSyncQueue(
            path=self.config["offline_queue"]["path"],
            batch_size=meter_cfg["batch_size"],
        )
        self.network = network or NetworkState()
        self.network.add_listener(self._on_network_change)
        self.scheduler = scheduler or Scheduler()
        self.rng = rng or np.random.default_rng()
        self.statistics = StatisticsAggregator(
            tariff_rate=self.config["tariff"]["rate_per_kwh"],
            samples_per_day=meter_cfg["samples_per_day"],
            max_operating_gap_hours=meter_cfg["update_interval"] / 3_600_000,
        )

        self.meters: Dict[str, Meter] = {}
        self.devices: Dict[str, Device] = {}
        self.artifacts: Dict[Optional[str], AnalyticsSnapshot] = {}
        self._listeners: Dict[str, List[Callable[[Reading], None]]] = {}
        self._flush_guard = ReentrancyGuard("offline queue flush")
        self._analytics_guard = ReentrancyGuard("analytics cycle")

        if meter_cfg["enable_auto_sync"]:
            self.scheduler.add(SYNC_TIMER, meter_cfg["sync_interval"] / 1000, self.sync_tick)
        self.scheduler.add(ANALYTICS_TIMER, meter_cfg["analytics_interval"] / 1000,
                           self.run_scheduled_analytics)

    # ──────────────────────────────────────────────────────────────────────────
    # Registration
    # ──────────────────────────────────────────────────────────────────────────

    def register_meter(self, user_id: str, meter_id: Optional[str] = None,
                       serial_number: str = "", location: str = "",
                       start_monitoring: bool = False) -> Meter:
        meter_cfg = self.config["meter"]
        meter = Meter(
            meter_id=meter_id or f"meter-{uuid.uuid4().hex[:12]}",
            user_id=user_id,
            serial_number=serial_number,
            location=location,
            configuration=MeterConfiguration(
                update_interval=meter_cfg["update_interval"],
                batch_size=meter_cfg["batch_size"],
                data_retention_days=meter_cfg["data_retention_days"],
                alert_thresholds=dict(meter_cfg["alert_thresholds"]),
            ),
        )
        self.meters[meter.meter_id] = meter
        logger.info("Registered meter %s for user %s", meter.meter_id, user_id)
        if start_monitoring:
            self.start_meter_monitoring(meter.meter_id)
        return meter

    def get_meter(self, meter_id: str) -> Meter:
        try:
            return self.meters[meter_id]
        except KeyError:
            raise UnknownEntityError(f"Unknown meter: {meter_id}") from None

    def get_device(self, device_id: str) -> Device:
        try:
            return self.devices[device_id]
        except KeyError:
            raise UnknownEntityError(f"Unknown device: {device_id}") from None

    def add_device(self, meter_id: str, name: str, device_type: str = "other",
                   location: str = "", power_rating: float = 0.0,
                   device_id: Optional[str] = None, is_active: bool = True,
                   energy_saving_mode: bool = False, efficiency_rating: str = "A") -> Device:
        self.get_meter(meter_id)
        if device_type not in DEVICE_TYPES:
            raise ValidationError(f"Unknown device type: {device_type}", ["device_type"])
        if efficiency_rating not in EFFICIENCY_RATINGS:
            raise ValidationError(f"Unknown efficiency rating: {efficiency_rating}", ["efficiency_rating"])
        if power_rating < 0:
            raise ValidationError("Power rating cannot be negative", ["power_rating"])

        device = Device(
            device_id=device_id or f"device-{uuid.uuid4().hex[:12]}",
            meter_id=meter_id,
            name=name,
            device_type=device_type,
            location=location,
            power_rating=power_rating,
            is_active=is_active,
            energy_saving_mode=energy_saving_mode,
            efficiency_rating=efficiency_rating,
        )
        self.devices[device.device_id] = device
        logger.info("Added device %s (%s) to meter %s", device.device_id, device_type, meter_id)
        return device

    def remove_device(self, device_id: str) -> None:
        self.get_device(device_id)
        del self.devices[device_id]
        logger.info("Removed device %s", device_id)

    def update_device_configuration(self, device_id: str, **updates) -> Device:
        device = self.get_device(device_id)
        device.configuration.update(updates)
        if "power_saving_mode" in updates:
            device.energy_saving_mode = bool(updates["power_saving_mode"])
        return device

    def devices_for_meter(self, meter_id: str) -> List[Device]:
        return [d for d in self.devices.values() if d.meter_id == meter_id]

    # ──────────────────────────────────────────────────────────────────────────
    # Ingestion
    # ──────────────────────────────────────────────────────────────────────────

    def record_reading(self, raw: Dict[str, Any], meter_id: Optional[str] = None) -> IngestResult:
        """
        Validate, score and accept one reading.

        Online, the reading goes straight to the store; offline (or when the
        store is unreachable) it is appended to the offline queue. Statistics
        are updated once per reading identity and subscribers are notified
        once per accepted reading.

        Raises:
            ValidationError: malformed reading
            UnknownEntityError: meter or device not registered
        """
        reading = build_reading(raw, meter_id, self.config["quality"])
        meter = self.get_meter(reading.meter_id)
        device = None
        if reading.device_id is not None:
            device = self.get_device(reading.device_id)
            if device.meter_id != meter.meter_id:
                raise ValidationError(
                    f"Device {device.device_id} is not attached to meter {meter.meter_id}",
                    ["device_id"],
                )

        result = IngestResult(reading=reading)
        if reading.reading_id in self.store or self.statistics.has_applied(reading.reading_id):
            result.duplicate = True
            return result

        if reading.quality != "excellent":
            notice = QualityDegraded(reading.reading_id, reading.quality, reading.quality_score)
            logger.warning("%s", notice)
            result.notices.append(notice)
        if reading.anomalies:
            notice = AnomalyDetected(reading.reading_id, list(reading.anomalies))
            logger.warning("%s", notice)
            result.notices.append(notice)

        self._persist(reading, result)
        if not (result.stored or result.queued):
            self._record_error(meter, f"reading {reading.reading_id} dropped while offline")
            return result

        try:
            self.statistics.apply(reading, meter, device)
        except StatisticsUpdateFailure as e:
            logger.error("Statistics update failed: %s", e)
            result.notices.append(e)

        if meter.status.last_reading is None or reading.timestamp > meter.status.last_reading:
            meter.status.last_reading = reading.timestamp

        for alert in check_alerts(self._alert_values(reading), meter.configuration.alert_thresholds):
            self._record_error(meter, f"{alert} at {reading.timestamp.isoformat()}")

        self._notify(meter.meter_id, reading)

        if result.stored and len(self.queue):
            self.flush_offline_queue()
        return result

    def _persist(self, reading: Reading, result: IngestResult) -> None:
        if self.network.is_online:
            try:
                self.store.append(reading)
                result.stored = True
                return
            except ConnectivityError as e:
                logger.warning("Store unreachable, buffering reading %s: %s", reading.reading_id, e)
                result.notices.append(e)

        if self.config["meter"]["enable_offline_storage"]:
            self.queue.enqueue(reading)
            result.queued = True
        else:
            logger.error("Offline storage disabled, dropping reading %s", reading.reading_id)

    @staticmethod
    def _alert_values(reading: Reading) -> Dict[str, float]:
        return {
            "power": reading.power,
            "voltage": reading.voltage,
            "current": reading.current,
            "frequency": reading.frequency,
            "power_factor": reading.power_factor,
        }

    def _record_error(self, meter: Meter, message: str) -> None:
        logger.warning("Meter %s: %s", meter.meter_id, message)
        errors = meter.status.errors
        errors.append(message)
        limit = self.config["meter"]["max_status_errors"]
        if len(errors) > limit:
            del errors[:len(errors) - limit]

    # ──────────────────────────────────────────────────────────────────────────
    # Connectivity and offline replay
    # ──────────────────────────────────────────────────────────────────────────

    def set_online(self, online: bool) -> None:
        self.network.set_online(online)

    def _on_network_change(self, online: bool) -> None:
        for meter in self.meters.values():
            meter.status.is_online = online
        if online:
            self.flush_offline_queue()

    def flush_offline_queue(self) -> int:
        """
        Commit one batch from the offline queue.

        Returns:
            Number of readings committed; 0 when offline, empty, busy or failed
        """
        if not self.network.is_online or not len(self.queue):
            return 0
        with self._flush_guard.hold() as acquired:
            if not acquired:
                return 0
            batch = self.queue.peek()
            try:
                return self.queue.flush(self.store.append_batch)
            except SyncFailure as e:
                logger.warning("%s; will retry on next sync", e)
                for meter_id in {r.meter_id for r in batch}:
                    if meter_id in self.meters:
                        self._record_error(self.meters[meter_id], f"sync_failure: {e}")
                return 0

    def sync_tick(self) -> None:
        """Timer callback: one flush attempt per tick."""
        self.flush_offline_queue()

    # ──────────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────────────────────────────────────

    def on_meter_data_changed(self, meter_id: str,
                              callback: Callable[[Reading], None]) -> Callable[[], None]:
        """Subscribe to accepted readings of a meter; returns an unsubscribe callable."""
        listeners = self._listeners.setdefault(meter_id, [])
        listeners.append(callback)

        def unsubscribe() -> None:
            if callback in listeners:
                listeners.remove(callback)

        return unsubscribe

    def _notify(self, meter_id: str, reading: Reading) -> None:
        for callback in list(self._listeners.get(meter_id, [])):
            try:
                callback(reading)
            except Exception:
                logger.exception("Listener for meter %s failed", meter_id)

    # ──────────────────────────────────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────────────────────────────────

    def get_meter_reading(self, meter_id: str, recent: int = 10) -> Optional[MeterReading]:
        """Summary of the meter's most recent stored readings, None if the store is unreachable."""
        meter = self.get_meter(meter_id)
        try:
            readings = self.store.recent(recent, meter_id=meter_id)
        except ConnectivityError as e:
            logger.warning("Cannot read meter %s: %s", meter_id, e)
            return None

        device_readings: Dict[str, Reading] = {}
        for r in readings:
            if r.device_id:
                device_readings[r.device_id] = r
        return MeterReading(
            meter_id=meter_id,
            total_consumption=sum(r.consumption for r in readings),
            current_power=max((r.power for r in readings), default=0.0),
            device_readings=device_readings,
            quality=meter_quality(readings),
            timestamp=self.clock(),
            errors=list(meter.status.errors),
        )

    def get_device_energy_data(self, device_id: str, start, end) -> List[Reading]:
        self.get_device(device_id)
        try:
            return self.store.between(start, end, device_id=device_id)
        except ConnectivityError as e:
            logger.warning("Cannot read device %s: %s", device_id, e)
            return []

    def get_quality_report(self, meter_id: str) -> DataQualityMetrics:
        self.get_meter(meter_id)
        return summarize_readings(self.store.all(meter_id=meter_id))

    # ──────────────────────────────────────────────────────────────────────────
    # Monitoring
    # ──────────────────────────────────────────────────────────────────────────

    @staticmethod
    def _monitor_timer(meter_id: str) -> str:
        return f"monitor:{meter_id}"

    def start_meter_monitoring(self, meter_id: str) -> None:
        meter = self.get_meter(meter_id)
        self.scheduler.add(
            self._monitor_timer(meter_id),
            meter.configuration.update_interval / 1000,
            lambda: self.simulate_reading(meter_id),
        )

    def stop_meter_monitoring(self, meter_id: str) -> bool:
        return self.scheduler.cancel(self._monitor_timer(meter_id))

    def simulate_reading(self, meter_id: str) -> List[IngestResult]:
        """Produce and record one reading per active device of the meter."""
        meter = self.get_meter(meter_id)
        now = self.clock()
        interval_hours = meter.configuration.update_interval / 3_600_000
        results = []
        for device in self.devices_for_meter(meter_id):
            if not device.is_active:
                continue
            raw = generate_simulated_reading(device, now, self.rng, interval_hours)
            results.append(self.record_reading(raw))
        meter.status.is_online = self.network.is_online
        return results

    # ──────────────────────────────────────────────────────────────────────────
    # Statistics and analytics
    # ──────────────────────────────────────────────────────────────────────────

    def rebuild_statistics(self) -> int:
        """Recompute every meter and device statistic from stored and queued readings."""
        readings = self.store.all() + self.queue.entries()
        return self.statistics.rebuild(readings, self.meters, self.devices)

    def run_analytics_cycle(self, meter_id: Optional[str] = None) -> Optional[AnalyticsSnapshot]:
        """
        Recompute patterns, trends, benchmarks, insights and forecasts from scratch.

        Returns:
            The new snapshot, or None if a cycle is already running or the
            store is unreachable (the previous snapshot is kept)
        """
        with self._analytics_guard.hold() as acquired:
            if not acquired:
                return None
            try:
                return self._analytics(meter_id)
            except ConnectivityError as e:
                logger.warning("Analytics cycle skipped: %s", e)
                return None

    def _analytics(self, meter_id: Optional[str]) -> AnalyticsSnapshot:
        cfg = self.config
        acfg = cfg["analytics"]
        tz = acfg["timezone"]
        now = self.clock()

        history_start = now - timedelta(days=acfg["benchmark_window_days"])
        readings = self.store.between(history_start, now, meter_id=meter_id)
        frame = TelemetryStore.to_frame(readings)
        points = energy_analysis.build_data_points(frame, cfg)
        # Day-level analytics only compare whole calendar days
        daily = energy_analysis.complete_days(
            energy_analysis.daily_totals(points, tz), history_start, now, tz
        )

        window_start = now - timedelta(days=acfg["anomaly_window_days"])
        recent_daily = daily.tail(acfg["anomaly_window_days"])

        patterns = energy_analysis.detect_consumption_patterns(points, tz)
        trends = energy_analysis.analyze_trends(recent_daily, "week", acfg["stable_threshold_pct"])
        benchmarks = energy_analysis.generate_benchmark_comparisons(daily, cfg["benchmarks"])
        predictions = energy_analysis.generate_predictive_insights(daily, trends, cfg)

        insights = anomaly_detection.detect_anomalies(
            recent_daily, acfg["spike_factor"], acfg["efficiency_floor"]
        )
        recent_frame = frame[frame["timestamp"] >= window_start] if not frame.empty else frame
        outliers, _ = anomaly_detection.detect_consumption_anomalies(
            recent_frame, acfg["zscore_threshold"], acfg["min_zscore_points"]
        )
        if not outliers.empty:
            insights.extend(anomaly_detection.outlier_insights(outliers))
        insights.extend(self._trend_insights(trends))
        insights.extend(self._prediction_insights(predictions))

        devices = (self.devices_for_meter(meter_id) if meter_id else list(self.devices.values()))
        snapshot = AnalyticsSnapshot(
            meter_id=meter_id,
            generated_at=now,
            data_points=len(points),
            patterns=patterns,
            trends=trends,
            benchmarks=benchmarks,
            insights=insights,
            predictions=predictions,
            efficiency=energy_analysis.calculate_efficiency_score(devices, daily),
            costs=energy_analysis.analyze_costs(points, devices, cfg["tariff"]["analytics_rate_per_kwh"]),
            carbon=energy_analysis.analyze_carbon_footprint(points, devices, cfg["tariff"]["carbon_kg_per_kwh"]),
        )
        self.artifacts[meter_id] = snapshot
        logger.info("Analytics for %s: %d points, %d insights",
                    meter_id or "all meters", len(points), len(insights))
        return snapshot

    @staticmethod
    def _trend_insights(trends: List[EnergyTrend]) -> List[Insight]:
        insights = []
        for t in trends:
            if t.significance not in ("high", "critical") or t.direction == "stable":
                continue
            insights.append(Insight(
                id=f"{t.metric}_trend",
                title=f"{t.metric.capitalize()} {t.direction}",
                description=f"{t.metric.capitalize()} is {t.direction} by {t.magnitude:.1f}% over the {t.period}",
                category="trend",
                severity="medium",
                confidence=75,
                data={"metric": t.metric, "direction": t.direction, "magnitude": t.magnitude},
                recommendations=list(t.factors),
            ))
        return insights

    @staticmethod
    def _prediction_insights(predictions: List[PredictiveInsight]) -> List[Insight]:
        return [
            Insight(
                id=f"{p.type}_forecast",
                title=f"Projected {p.type} above baseline",
                description=f"{p.timeframe}: {p.prediction:.2f} projected against a baseline of {p.baseline:.2f}",
                category="prediction",
                severity="medium",
                confidence=p.confidence,
                data={"prediction": p.prediction, "baseline": p.baseline},
                recommendations=list(p.recommendations),
            )
            for p in predictions if p.alert_level != "info"
        ]

    def run_scheduled_analytics(self) -> None:
        """Timer callback: prune expired readings, then recompute per meter."""
        try:
            self.store.prune()
        except ConnectivityError as e:
            logger.warning("Retention pruning skipped: %s", e)
        else:
            queued = {r.reading_id for r in self.queue.entries()}
            self.statistics.forget_before(self.store.retention_cutoff(), keep=queued)
        for meter_id in list(self.meters):
            self.run_analytics_cycle(meter_id)

    # ──────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────────────

    def cleanup(self) -> None:
        """Stop all timers, drop subscribers and make a last flush attempt."""
        self.scheduler.clear()
        self._listeners.clear()
        if len(self.queue):
            self.flush_offline_queue()
