import unittest
from datetime import datetime, timedelta, timezone

import numpy as np

from errors import AnomalyDetected, QualityDegraded, UnknownEntityError, ValidationError
from meter_service import ANALYTICS_TIMER, SYNC_TIMER, NetworkState, SmartMeterService
from scheduler import Scheduler
from telemetry_store import TelemetryStore

BASE = datetime(2025, 3, 10, tzinfo=timezone.utc)


class Clock:
    """Wall clock for the service plus a monotonic view for the scheduler."""

    def __init__(self, now=BASE):
        self.now = now

    def __call__(self):
        return self.now

    def monotonic(self):
        return (self.now - BASE).total_seconds()


def raw(minute, meter_id="meter-1", device_id="dev-1", **overrides):
    reading = {
        "timestamp": BASE + timedelta(minutes=minute),
        "power": 1000.0,
        "voltage": 120.0,
        "current": 8.3,
        "frequency": 60.0,
        "powerFactor": 0.95,
        "consumptionDelta": 0.5,
        "deviceId": device_id,
        "meterId": meter_id,
    }
    reading.update(overrides)
    return reading


class ServiceTestCase(unittest.TestCase):

    def setUp(self):
        self.clock = Clock(BASE + timedelta(days=1))
        self.store = TelemetryStore(clock=self.clock)
        self.network = NetworkState()
        self.service = SmartMeterService(
            config={"meter": {"batch_size": 50}},
            store=self.store,
            network=self.network,
            clock=self.clock,
            scheduler=Scheduler(clock=self.clock.monotonic),
            rng=np.random.default_rng(7),
        )
        self.meter = self.service.register_meter("user-1", meter_id="meter-1")
        self.device = self.service.add_device("meter-1", "Kitchen Fridge", "refrigerator",
                                              location="kitchen", power_rating=150, device_id="dev-1")


class TestIngestion(ServiceTestCase):

    def test_online_reading_is_stored_and_counted(self):
        result = self.service.record_reading(raw(0))
        self.assertTrue(result.stored)
        self.assertFalse(result.queued)
        self.assertEqual(len(self.store), 1)
        self.assertAlmostEqual(self.meter.statistics.total_energy_consumed, 0.5)
        self.assertAlmostEqual(self.meter.statistics.cost_to_date, 0.06)
        self.assertEqual(self.device.statistics.peak_power_usage, 1000.0)
        self.assertEqual(self.meter.status.last_reading, BASE)

    def test_validation_error_reaches_caller(self):
        with self.assertRaises(ValidationError):
            self.service.record_reading(raw(0, voltage="n/a"))
        self.assertEqual(len(self.store), 0)
        self.assertEqual(len(self.service.queue), 0)

    def test_unknown_meter_and_foreign_device(self):
        with self.assertRaises(UnknownEntityError):
            self.service.record_reading(raw(0, meter_id="ghost", device_id=None))
        self.service.register_meter("user-2", meter_id="meter-2")
        with self.assertRaises(ValidationError):
            self.service.record_reading(raw(0, meter_id="meter-2"))

    def test_degraded_reading_stored_with_notices(self):
        result = self.service.record_reading(raw(0, voltage=95, power=12000))
        self.assertTrue(result.stored)
        kinds = {type(n) for n in result.notices}
        self.assertEqual(kinds, {QualityDegraded, AnomalyDetected})
        self.assertEqual(result.reading.quality, "good")

    def test_duplicate_reading_ignored(self):
        self.service.record_reading(raw(0))
        again = self.service.record_reading(raw(0))
        self.assertTrue(again.duplicate)
        self.assertAlmostEqual(self.meter.statistics.total_energy_consumed, 0.5)

    def test_alert_thresholds_recorded_on_status(self):
        self.service.record_reading(raw(0, power=6000, voltage=108))
        errors = self.meter.status.errors
        self.assertTrue(any(e.startswith("high_usage") for e in errors))
        self.assertTrue(any(e.startswith("low_voltage") for e in errors))

    def test_status_errors_are_bounded(self):
        for minute in range(30):
            self.service.record_reading(raw(minute, power=6000))
        self.assertEqual(len(self.meter.status.errors), 20)

    def test_meter_level_reading_without_device(self):
        result = self.service.record_reading(raw(0, device_id=None))
        self.assertTrue(result.stored)
        self.assertEqual(self.device.statistics.reading_count, 0)
        self.assertEqual(self.meter.statistics.reading_count, 1)


class TestOfflineBehaviour(ServiceTestCase):

    def test_offline_readings_queue_and_replay_on_reconnect(self):
        self.network.set_online(False)
        for minute in range(120):
            result = self.service.record_reading(raw(minute))
            self.assertTrue(result.queued)
        self.assertEqual(len(self.store), 0)
        self.assertEqual(len(self.service.queue), 120)
        self.assertFalse(self.meter.status.is_online)
        # Statistics count accepted readings once, even before they are stored
        self.assertAlmostEqual(self.meter.statistics.total_energy_consumed, 60.0)

        self.network.set_online(True)
        self.assertEqual(len(self.service.queue), 70)
        self.service.sync_tick()
        self.assertEqual(len(self.service.queue), 20)
        self.service.sync_tick()
        self.assertEqual(len(self.service.queue), 0)
        self.assertEqual(len(self.store), 120)
        self.assertAlmostEqual(self.meter.statistics.total_energy_consumed, 60.0)

    def test_failed_flush_keeps_queue(self):
        self.network.set_online(False)
        for minute in range(50):
            self.service.record_reading(raw(minute))
        before = [r.reading_id for r in self.service.queue.entries()]

        self.store.set_available(False)
        self.network.set_online(True)
        self.assertEqual(len(self.service.queue), 50)
        self.assertEqual([r.reading_id for r in self.service.queue.entries()], before)
        self.assertTrue(any(e.startswith("sync_failure") for e in self.meter.status.errors))

        self.store.set_available(True)
        self.assertEqual(self.service.flush_offline_queue(), 50)
        self.assertEqual(len(self.store), 50)

    def test_unreachable_store_routes_to_queue(self):
        self.store.set_available(False)
        result = self.service.record_reading(raw(0))
        self.assertTrue(result.queued)
        self.assertEqual(len(self.service.queue), 1)

    def test_online_write_triggers_flush(self):
        self.network.set_online(False)
        self.service.record_reading(raw(0))
        self.network._online = True  # connectivity back without a reconnect event
        self.service.record_reading(raw(1))
        self.assertEqual(len(self.service.queue), 0)
        self.assertEqual(len(self.store), 2)

    def test_sync_timer_drives_flush(self):
        self.network.set_online(False)
        for minute in range(60):
            self.service.record_reading(raw(minute))
        self.network._online = True
        self.clock.now += timedelta(seconds=30)
        self.assertIn(SYNC_TIMER, self.service.scheduler.run_pending())
        self.assertEqual(len(self.service.queue), 10)

    def test_offline_storage_disabled_drops(self):
        service = SmartMeterService(
            config={"meter": {"enable_offline_storage": False, "enable_auto_sync": False}},
            network=NetworkState(online=False),
        )
        meter = service.register_meter("user-1", meter_id="m")
        result = service.record_reading(raw(0, meter_id="m", device_id=None))
        self.assertFalse(result.stored or result.queued)
        self.assertEqual(meter.statistics.reading_count, 0)
        self.assertEqual(len(meter.status.errors), 1)
        self.assertNotIn(SYNC_TIMER, service.scheduler)


class TestSubscriptions(ServiceTestCase):

    def test_subscribers_notified_in_order_despite_errors(self):
        seen = []

        def broken(reading):
            seen.append("broken")
            raise RuntimeError("listener bug")

        self.service.on_meter_data_changed("meter-1", broken)
        unsubscribe = self.service.on_meter_data_changed("meter-1", lambda r: seen.append(r.reading_id))

        result = self.service.record_reading(raw(0))
        self.assertEqual(seen, ["broken", result.reading.reading_id])

        unsubscribe()
        self.service.record_reading(raw(1))
        self.assertEqual(seen.count("broken"), 2)
        self.assertEqual(len(seen), 3)

    def test_duplicate_does_not_notify(self):
        seen = []
        self.service.on_meter_data_changed("meter-1", seen.append)
        self.service.record_reading(raw(0))
        self.service.record_reading(raw(0))
        self.assertEqual(len(seen), 1)


class TestQueries(ServiceTestCase):

    def test_meter_reading_summary(self):
        lamp = self.service.add_device("meter-1", "Lamp", "light", power_rating=60, device_id="dev-2")
        self.service.record_reading(raw(0, power=200))
        self.service.record_reading(raw(1, device_id=lamp.device_id, power=60, consumptionDelta=0.1))
        self.service.record_reading(raw(2, power=300))

        summary = self.service.get_meter_reading("meter-1")
        self.assertAlmostEqual(summary.total_consumption, 1.1)
        self.assertEqual(summary.current_power, 300)
        self.assertEqual(set(summary.device_readings), {"dev-1", "dev-2"})
        self.assertEqual(summary.device_readings["dev-1"].power, 300)
        self.assertEqual(summary.quality, "excellent")

    def test_meter_reading_when_store_down(self):
        self.store.set_available(False)
        self.assertIsNone(self.service.get_meter_reading("meter-1"))

    def test_device_energy_data(self):
        for minute in range(10):
            self.service.record_reading(raw(minute))
        data = self.service.get_device_energy_data("dev-1", BASE + timedelta(minutes=2), BASE + timedelta(minutes=4))
        self.assertEqual(len(data), 3)
        with self.assertRaises(UnknownEntityError):
            self.service.get_device_energy_data("nope", BASE, BASE)

    def test_quality_report(self):
        self.service.record_reading(raw(0))
        self.service.record_reading(raw(1, voltage=105))
        report = self.service.get_quality_report("meter-1")
        self.assertEqual(report.total_records, 2)
        self.assertEqual(report.readings_by_quality["good"], 1)


class TestDevices(ServiceTestCase):

    def test_invalid_device(self):
        with self.assertRaises(ValidationError):
            self.service.add_device("meter-1", "Toaster", "toaster")
        with self.assertRaises(UnknownEntityError):
            self.service.add_device("ghost", "Lamp", "light")

    def test_configuration_and_removal(self):
        self.service.update_device_configuration("dev-1", power_saving_mode=True)
        self.assertTrue(self.device.energy_saving_mode)
        self.service.remove_device("dev-1")
        self.assertEqual(self.service.devices_for_meter("meter-1"), [])
        with self.assertRaises(UnknownEntityError):
            self.service.remove_device("dev-1")


class TestMonitoring(ServiceTestCase):

    def test_monitoring_timer_simulates_readings(self):
        self.service.add_device("meter-1", "Old Fan", "fan", power_rating=50, device_id="dev-3", is_active=False)
        self.service.start_meter_monitoring("meter-1")
        self.clock.now += timedelta(seconds=60)
        fired = self.service.scheduler.run_pending()
        self.assertIn("monitor:meter-1", fired)
        self.assertEqual(len(self.store), 1)

        reading = self.store.all()[0]
        self.assertEqual(reading.device_id, "dev-1")
        self.assertTrue(115 <= reading.voltage <= 125)
        self.assertTrue(59.9 <= reading.frequency <= 60.1)
        self.assertEqual(reading.quality, "excellent")

        self.assertTrue(self.service.stop_meter_monitoring("meter-1"))
        self.clock.now += timedelta(seconds=60)
        self.service.scheduler.run_pending()
        self.assertEqual(len(self.store), 1)

    def test_cleanup_stops_everything(self):
        self.service.start_meter_monitoring("meter-1")
        self.network.set_online(False)
        self.service.record_reading(raw(0))
        self.network._online = True
        self.service.cleanup()
        self.assertEqual(self.service.scheduler.names(), [])
        self.assertEqual(len(self.service.queue), 0)


class TestStatisticsAndAnalytics(ServiceTestCase):

    def _fill_week(self, spike_hour=None):
        """One reading per hour for seven days before the clock."""
        self.clock.now = BASE + timedelta(days=7)
        for h in range(7 * 24):
            kwh = 1.0
            if spike_hour is not None and h == spike_hour:
                kwh = 100.0
            self.service.record_reading(raw(h * 60, consumptionDelta=kwh))

    def test_rebuild_statistics(self):
        self._fill_week()
        expected = self.meter.statistics.total_energy_consumed
        self.meter.statistics.total_energy_consumed = 0
        self.assertEqual(self.service.rebuild_statistics(), 7 * 24)
        self.assertAlmostEqual(self.meter.statistics.total_energy_consumed, expected)
        self.assertAlmostEqual(self.meter.statistics.average_daily_usage, 24.0)

    def test_analytics_cycle_produces_artifacts(self):
        self._fill_week(spike_hour=100)
        snapshot = self.service.run_analytics_cycle("meter-1")

        self.assertEqual(snapshot.data_points, 7 * 24)
        self.assertEqual(len(snapshot.patterns), 3)
        self.assertEqual({t.metric for t in snapshot.trends}, {"consumption", "cost", "efficiency"})
        self.assertEqual({b.category for b in snapshot.benchmarks}, {"consumption", "cost", "efficiency"})
        ids = [i.id for i in snapshot.insights]
        self.assertIn("consumption_spike", ids)
        self.assertTrue(any(i.startswith("outlier_dev-1") for i in ids))
        self.assertEqual([p.type for p in snapshot.predictions], ["consumption", "cost"])
        self.assertIs(self.service.artifacts["meter-1"], snapshot)
        self.assertIn("Kitchen Fridge", snapshot.costs.breakdown)

    def test_analytics_skipped_when_store_down(self):
        self._fill_week()
        first = self.service.run_analytics_cycle("meter-1")
        self.store.set_available(False)
        self.assertIsNone(self.service.run_analytics_cycle("meter-1"))
        self.assertIs(self.service.artifacts["meter-1"], first)

    def test_scheduled_analytics_prunes_and_recomputes(self):
        self._fill_week()
        self.clock.now = BASE + timedelta(days=95)
        self.service.run_scheduled_analytics()
        self.assertLess(len(self.store), 7 * 24)
        self.assertIn("meter-1", self.service.artifacts)

    def test_steady_usage_sampled_mid_day_is_stable(self):
        self.service.config["analytics"]["benchmark_window_days"] = 5
        self.clock.now = BASE + timedelta(days=8, hours=12)
        for h in range(8 * 24 + 12):
            self.service.record_reading(raw(h * 60))

        snapshot = self.service.run_analytics_cycle("meter-1")
        consumption = next(t for t in snapshot.trends if t.metric == "consumption")
        self.assertEqual(consumption.direction, "stable")
        self.assertEqual(consumption.magnitude, 0)
        self.assertEqual([i.id for i in snapshot.insights if i.category in ("trend", "prediction")], [])

        forecast = snapshot.predictions[0]
        self.assertEqual(forecast.alert_level, "info")
        self.assertAlmostEqual(forecast.prediction, forecast.baseline)
        monthly = next(b for b in snapshot.benchmarks if b.category == "consumption")
        self.assertAlmostEqual(monthly.user_value, 12.0 * 30)

    def test_daily_evening_peak_is_not_a_spike(self):
        self.clock.now = BASE + timedelta(days=8)
        for h in range(8 * 24):
            kwh = 1.5 if h % 24 == 19 else 0.5
            self.service.record_reading(raw(h * 60, consumptionDelta=kwh))

        snapshot = self.service.run_analytics_cycle("meter-1")
        self.assertNotIn("consumption_spike", [i.id for i in snapshot.insights])

    def test_scheduled_analytics_forgets_expired_identities(self):
        self._fill_week()
        total = self.meter.statistics.total_energy_consumed
        self.network.set_online(False)
        self.service.record_reading(raw(30))
        self.assertEqual(self.service.statistics.tracked, 7 * 24 + 1)

        # Cutoff lands at hour 120, so 48 stored readings survive
        self.clock.now = BASE + timedelta(days=95)
        self.service.run_scheduled_analytics()
        self.assertEqual(len(self.store), 48)
        self.assertEqual(self.service.statistics.tracked, 48 + 1)
        self.assertTrue(self.service.statistics.has_applied(self.service.queue.peek()[0].reading_id))
        self.assertAlmostEqual(self.meter.statistics.total_energy_consumed, total + 0.5)

    def test_scheduled_analytics_leaves_unreachable_store_alone(self):
        self._fill_week()
        self.clock.now = BASE + timedelta(days=95)
        self.store.set_available(False)
        self.service.run_scheduled_analytics()
        self.assertEqual(len(self.store), 7 * 24)
        self.assertEqual(self.service.statistics.tracked, 7 * 24)

    def test_analytics_timer_registered(self):
        self.assertIn(ANALYTICS_TIMER, self.service.scheduler)


if __name__ == "__main__":
    unittest.main()
