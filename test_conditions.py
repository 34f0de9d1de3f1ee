import unittest

from conditions import (
    AllOf, AnyOf, Comparison, Literal, Ref, check_alerts, evaluate, parse_condition,
)

THRESHOLDS = {"high_usage": 5000, "low_voltage": 110, "high_voltage": 130, "power_factor": 0.7}


class TestParseCondition(unittest.TestCase):

    def test_numeric_literal(self):
        self.assertEqual(parse_condition("temperature > 28"),
                         Comparison("temperature", ">", Literal(28.0)))

    def test_threshold_reference(self):
        self.assertEqual(parse_condition("voltage < low_voltage"),
                         Comparison("voltage", "<", Ref("low_voltage")))

    def test_single_equals_and_booleans(self):
        self.assertEqual(parse_condition("occupancy = false"),
                         Comparison("occupancy", "==", Literal(False)))

    def test_quoted_string(self):
        self.assertEqual(parse_condition("time == '18:00'"),
                         Comparison("time", "==", Literal("18:00")))

    def test_rejects_code(self):
        with self.assertRaises(ValueError):
            parse_condition("__import__('os').system('ls')")

    def test_unknown_operator(self):
        with self.assertRaises(ValueError):
            Comparison("power", "=~", Literal(1))


class TestEvaluate(unittest.TestCase):

    def test_comparison_with_reference(self):
        cond = parse_condition("power > high_usage")
        self.assertTrue(evaluate(cond, {"power": 6000}, THRESHOLDS))
        self.assertFalse(evaluate(cond, {"power": 5000}, THRESHOLDS))

    def test_missing_value_or_threshold_is_false(self):
        cond = parse_condition("power > high_usage")
        self.assertFalse(evaluate(cond, {}, THRESHOLDS))
        self.assertFalse(evaluate(cond, {"power": 6000}, {}))

    def test_incomparable_types_are_false(self):
        self.assertFalse(evaluate(parse_condition("mode > 3"), {"mode": "eco"}))

    def test_combinators(self):
        band = AllOf((parse_condition("voltage >= 115"), parse_condition("voltage <= 125")))
        self.assertTrue(evaluate(band, {"voltage": 120}))
        self.assertFalse(evaluate(band, {"voltage": 126}))
        either = AnyOf((parse_condition("voltage < 110"), parse_condition("voltage > 130")))
        self.assertTrue(evaluate(either, {"voltage": 131}))
        self.assertFalse(evaluate(either, {"voltage": 120}))

    def test_not_a_condition(self):
        with self.assertRaises(TypeError):
            evaluate("power > 1", {"power": 2})


def test_check_alerts():
    values = {"power": 7000, "voltage": 105, "power_factor": 0.65}
    assert check_alerts(values, THRESHOLDS) == ["high_usage", "low_voltage", "low_power_factor"]
    assert check_alerts({"power": 100, "voltage": 120, "power_factor": 0.9}, THRESHOLDS) == []


if __name__ == "__main__":
    unittest.main()
