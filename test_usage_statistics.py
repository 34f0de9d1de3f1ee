import unittest

from errors import StatisticsUpdateFailure
from models import Device, Meter
from test_telemetry_store import make_reading
from usage_statistics import StatisticsAggregator


class TestStatisticsAggregator(unittest.TestCase):

    def setUp(self):
        self.agg = StatisticsAggregator(tariff_rate=0.12, samples_per_day=24, max_operating_gap_hours=1.0)
        self.meter = Meter(meter_id="meter-1", user_id="user-1")
        self.device = Device(device_id="dev-1", meter_id="meter-1", name="Fridge")

    def test_incremental_totals(self):
        self.agg.apply(make_reading(0, consumption=1.5, power=400), self.meter, self.device)
        self.agg.apply(make_reading(1, consumption=2.5, power=800), self.meter, self.device)

        m = self.meter.statistics
        self.assertAlmostEqual(m.total_energy_consumed, 4.0)
        self.assertEqual(m.peak_usage, 800)
        self.assertAlmostEqual(m.cost_to_date, 0.48)
        self.assertAlmostEqual(m.average_daily_usage, 4.0)
        self.assertEqual(m.reading_count, 2)

        d = self.device.statistics
        self.assertAlmostEqual(d.total_energy_consumed, 4.0)
        self.assertAlmostEqual(d.average_power_usage, 600)
        self.assertEqual(d.peak_power_usage, 800)
        self.assertAlmostEqual(d.operating_hours, 1.0)

    def test_replay_is_not_double_counted(self):
        r = make_reading(0, consumption=1.0)
        self.assertTrue(self.agg.apply(r, self.meter, self.device))
        self.assertFalse(self.agg.apply(r, self.meter, self.device))
        self.assertAlmostEqual(self.meter.statistics.total_energy_consumed, 1.0)

    def test_operating_hours_capped_and_order_tolerant(self):
        self.agg.apply(make_reading(0), self.meter, self.device)
        self.agg.apply(make_reading(5), self.meter, self.device)   # 5h gap capped at 1h
        self.agg.apply(make_reading(3), self.meter, self.device)   # late arrival adds nothing
        self.assertAlmostEqual(self.device.statistics.operating_hours, 1.0)
        self.assertEqual(self.device.statistics.last_reading.hour, 5)

    def test_average_daily_usage_over_many_days(self):
        for hour in range(48):
            self.agg.apply(make_reading(hour, consumption=0.5), self.meter)
        self.assertAlmostEqual(self.meter.statistics.average_daily_usage, 12.0)

    def test_wrong_meter_rejected(self):
        other = Meter(meter_id="meter-2", user_id="user-1")
        with self.assertRaises(StatisticsUpdateFailure):
            self.agg.apply(make_reading(0), other)

    def test_rebuild_matches_incremental(self):
        readings = [make_reading(h, consumption=0.1 * (h + 1), power=100 * (h + 1)) for h in range(10)]
        for r in readings:
            self.agg.apply(r, self.meter, self.device)
        expected_meter = vars(self.meter.statistics).copy()
        expected_device = vars(self.device.statistics).copy()

        # Corrupt the cache, then rebuild from the readings alone
        self.meter.statistics.total_energy_consumed = -1
        self.device.statistics.peak_power_usage = 0
        applied = self.agg.rebuild(reversed(readings), {"meter-1": self.meter}, {"dev-1": self.device})

        self.assertEqual(applied, 10)
        for key, value in expected_meter.items():
            self.assertAlmostEqual(getattr(self.meter.statistics, key), value)
        self.assertAlmostEqual(self.device.statistics.average_power_usage, expected_device["average_power_usage"])
        self.assertAlmostEqual(self.device.statistics.operating_hours, expected_device["operating_hours"])

    def test_rebuild_skips_unknown_meter(self):
        applied = self.agg.rebuild([make_reading(0, meter_id="ghost")], {"meter-1": self.meter}, {})
        self.assertEqual(applied, 0)


if __name__ == "__main__":
    unittest.main()
