from __future__ import annotations
import logging
from typing import List, Dict, Any, Optional, Tuple, Iterable

import numpy as np
import pandas as pd

from config import DEFAULT_CONFIG
from models import (
    BenchmarkComparison, CarbonFootprintAnalysis, ConsumptionPattern, CostAnalysis,
    Device, EfficiencyScore, EnergyDataPoint, EnergyTrend, PredictiveInsight, to_utc,
)

log = logging.getLogger(__name__)

POINT_COLUMNS = [
    "timestamp", "consumption", "cost", "power_demand",
    "efficiency", "carbon_footprint", "device_breakdown",
]

# Fixed time-of-day ranges evaluated by the pattern detector
PATTERN_RANGES = [
    {"id": "morning_peak", "name": "Morning Peak Usage", "pattern": "peak",
     "hours": [6, 7, 8, 9], "frequency": 0.8, "confidence": 85},
    {"id": "evening_peak", "name": "Evening Peak Usage", "pattern": "peak",
     "hours": [18, 19, 20, 21, 22], "frequency": 0.9, "confidence": 92},
    {"id": "night_valley", "name": "Night Valley Usage", "pattern": "valley",
     "hours": [23, 0, 1, 2, 3, 4, 5], "frequency": 0.95, "confidence": 88},
]

# (high, moderate) magnitude thresholds in percent
SIGNIFICANCE_THRESHOLDS = {
    "consumption": (15, 5),
    "cost": (20, 10),
    "efficiency": (10, 3),
}

TREND_FACTORS = {
    "consumption": ["Seasonal weather changes", "Device usage patterns", "New appliances"],
    "cost": ["Energy consumption changes", "Tariff rate adjustments", "Peak hour usage"],
    "efficiency": ["Device maintenance", "Usage optimization", "Smart scheduling"],
}

HIGHER_IS_BETTER = {"consumption": False, "cost": False, "efficiency": True}

EFFICIENCY_CATEGORIES = {
    "heating_cooling": ("ac",),
    "lighting": ("light",),
    "appliances": ("refrigerator", "washing_machine", "dishwasher", "microwave"),
    "water_heating": ("water_heater",),
    "electronics": ("tv", "router"),
}


# ────────────────────────────────────────────────────────────────────────────────
# DATA POINTS
# ────────────────────────────────────────────────────────────────────────────────


def build_data_points(readings: pd.DataFrame, config: Optional[Dict[str, Any]] = None) -> pd.DataFrame:
    """
    Bucket readings into hourly energy data points.

    Args:
        readings: DataFrame as produced by TelemetryStore.to_frame
        config: Full configuration dictionary (tariff and analytics sections)

    Returns:
        DataFrame with one row per hour and POINT_COLUMNS
    """
    if readings.empty:
        return pd.DataFrame(columns=POINT_COLUMNS)

    cfg = config or DEFAULT_CONFIG
    tariff = cfg["tariff"]
    weights = cfg["analytics"]["quality_weights"]

    df = readings.copy()
    df["hour"] = df["timestamp"].dt.floor("h")
    df["device_key"] = df["device_id"].fillna(df["meter_id"])
    df["weighted_eff"] = (df["power_factor"] * 100 * df["quality"].map(weights).fillna(1.0)).clip(0, 100)

    # Per device-hour: total delta, mean instantaneous power
    per_dev = (
        df.groupby(["hour", "device_key"])
        .agg(consumption=("consumption", "sum"), power=("power", "mean"))
        .reset_index()
    )

    hourly = per_dev.groupby("hour").agg(
        consumption=("consumption", "sum"), power=("power", "sum")
    )
    hourly["efficiency"] = df.groupby("hour")["weighted_eff"].mean()

    breakdown = {
        hour: {k: round(float(v), 4) for k, v in zip(g["device_key"], g["consumption"])}
        for hour, g in per_dev.groupby("hour")
    }

    points = pd.DataFrame({
        "timestamp": hourly.index,
        "consumption": hourly["consumption"].values,
        "cost": hourly["consumption"].values * tariff["analytics_rate_per_kwh"],
        "power_demand": hourly["power"].values / 1000,
        "efficiency": hourly["efficiency"].values,
        "carbon_footprint": hourly["consumption"].values * tariff["carbon_kg_per_kwh"],
    })
    points["device_breakdown"] = [breakdown[h] for h in hourly.index]
    return points.sort_values("timestamp").reset_index(drop=True)


def data_point_records(points: pd.DataFrame) -> List[EnergyDataPoint]:
    """Convert a data-point frame to EnergyDataPoint records."""
    return [
        EnergyDataPoint(
            timestamp=row.timestamp.to_pydatetime(),
            consumption=float(row.consumption),
            cost=float(row.cost),
            power_demand=float(row.power_demand),
            efficiency=float(row.efficiency),
            carbon_footprint=float(row.carbon_footprint),
            device_breakdown=dict(row.device_breakdown),
        )
        for row in points.itertuples(index=False)
    ]


def daily_totals(points: pd.DataFrame, timezone: str = "UTC") -> pd.DataFrame:
    """Aggregate hourly points to calendar days in the given timezone."""
    if points.empty:
        return pd.DataFrame(columns=["date", "consumption", "cost", "power_demand",
                                     "efficiency", "carbon_footprint"])
    d = points.copy()
    d["date"] = d["timestamp"].dt.tz_convert(timezone).dt.date
    daily = d.groupby("date").agg(
        consumption=("consumption", "sum"),
        cost=("cost", "sum"),
        power_demand=("power_demand", "max"),
        efficiency=("efficiency", "mean"),
        carbon_footprint=("carbon_footprint", "sum"),
    )
    return daily.reset_index()


def complete_days(daily: pd.DataFrame, window_start, now, timezone: str = "UTC") -> pd.DataFrame:
    """
    Drop the calendar days that the analysis window only partly covers.

    The day containing `now` is still in progress and the day containing
    `window_start` was cut by the window, so neither is comparable with
    whole days.
    """
    if daily.empty:
        return daily
    first = pd.Timestamp(to_utc(window_start)).tz_convert(timezone).date()
    last = pd.Timestamp(to_utc(now)).tz_convert(timezone).date()
    keep = (daily["date"] > first) & (daily["date"] < last)
    return daily[keep].reset_index(drop=True)


def filter_timeframe(points: pd.DataFrame, start=None, end=None) -> pd.DataFrame:
    """Rows whose timestamp falls within [start, end]."""
    if points.empty:
        return points
    mask = pd.Series(True, index=points.index)
    if start is not None:
        mask &= points["timestamp"] >= pd.Timestamp(to_utc(start))
    if end is not None:
        mask &= points["timestamp"] <= pd.Timestamp(to_utc(end))
    return points[mask]


# ────────────────────────────────────────────────────────────────────────────────
# PATTERNS
# ────────────────────────────────────────────────────────────────────────────────


def hourly_profile(points: pd.DataFrame, timezone: str = "UTC") -> pd.Series:
    """Mean consumption per hour-of-day bucket (0-23); empty buckets are absent."""
    if points.empty:
        return pd.Series(dtype=float)
    hours = points["timestamp"].dt.tz_convert(timezone).dt.hour
    return points.groupby(hours)["consumption"].mean()


def detect_consumption_patterns(points: pd.DataFrame, timezone: str = "UTC") -> List[ConsumptionPattern]:
    """
    Evaluate the fixed time-of-day ranges against the hourly profile.

    Hours without observations contribute zero to a range's average.
    Recomputed from scratch on every call.
    """
    profile = hourly_profile(points, timezone)
    patterns = []
    for window in PATTERN_RANGES:
        hours = window["hours"]
        avg = sum(float(profile.get(h, 0.0)) for h in hours) / len(hours)
        patterns.append(ConsumptionPattern(
            id=window["id"],
            name=window["name"],
            pattern=window["pattern"],
            start_hour=hours[0],
            end_hour=hours[-1],
            average_consumption=round(avg, 4),
            frequency=window["frequency"],
            confidence=window["confidence"],
        ))
    return patterns


# ────────────────────────────────────────────────────────────────────────────────
# TRENDS
# ────────────────────────────────────────────────────────────────────────────────


def calculate_trend(values: Iterable[float], stable_threshold: float = 2.0) -> Optional[Tuple[str, float]]:
    """
    Direction and magnitude (% change) between the first and second half means.

    Returns:
        (direction, magnitude) or None for fewer than two points
    """
    data = np.asarray(list(values), dtype=float)
    if len(data) < 2:
        return None

    mid = len(data) // 2
    first_avg = data[:mid].mean()
    second_avg = data[mid:].mean()

    if first_avg == 0:
        if second_avg == 0:
            return "stable", 0.0
        # No baseline to divide by; report the largest representable growth
        return ("increasing" if second_avg > 0 else "decreasing"), 100.0

    change = (second_avg - first_avg) / abs(first_avg) * 100
    if abs(change) < stable_threshold:
        return "stable", float(abs(change))
    return ("increasing" if change > 0 else "decreasing"), float(abs(change))


def trend_significance(metric: str, magnitude: float) -> str:
    high, moderate = SIGNIFICANCE_THRESHOLDS.get(metric, SIGNIFICANCE_THRESHOLDS["consumption"])
    if magnitude > high:
        return "high"
    if magnitude > moderate:
        return "moderate"
    return "low"


def analyze_trend(metric: str, values: Iterable[float], period: str = "",
                  stable_threshold: float = 2.0) -> Optional[EnergyTrend]:
    result = calculate_trend(values, stable_threshold)
    if result is None:
        return None
    direction, magnitude = result
    return EnergyTrend(
        metric=metric,
        direction=direction,
        magnitude=round(magnitude, 2),
        significance=trend_significance(metric, magnitude),
        period=period,
        factors=list(TREND_FACTORS.get(metric, [])),
    )


def analyze_trends(daily: pd.DataFrame, period: str = "week",
                   stable_threshold: float = 2.0) -> List[EnergyTrend]:
    """Consumption, cost and efficiency trends over an ordered daily series."""
    trends = []
    if len(daily) < 2:
        return trends
    for metric in ("consumption", "cost", "efficiency"):
        trend = analyze_trend(metric, daily[metric], f"{period} analysis", stable_threshold)
        if trend is not None:
            trends.append(trend)
    return trends


# ────────────────────────────────────────────────────────────────────────────────
# BENCHMARKS
# ────────────────────────────────────────────────────────────────────────────────


def _ratio(user_value: float, reference: float) -> float:
    if reference <= 0:
        raise ValueError(f"Reference value must be positive, got {reference}")
    return user_value / reference


def calculate_percentile(user_value: float, reference: float, higher_is_better: bool = False) -> int:
    """Tiered percentile from the user/reference ratio."""
    ratio = _ratio(user_value, reference)
    if higher_is_better:
        if ratio >= 1.2:
            return 90
        if ratio >= 1.1:
            return 80
        if ratio >= 1.0:
            return 70
        if ratio >= 0.9:
            return 50
        return 30
    if ratio <= 0.8:
        return 90
    if ratio <= 0.9:
        return 80
    if ratio <= 1.0:
        return 70
    if ratio <= 1.1:
        return 50
    return 30


def get_ranking(user_value: float, reference: float, higher_is_better: bool = False) -> str:
    ratio = _ratio(user_value, reference)
    if higher_is_better:
        if ratio >= 1.2:
            return "excellent"
        if ratio >= 1.1:
            return "good"
        if ratio >= 0.95:
            return "average"
        if ratio >= 0.8:
            return "below_average"
        return "poor"
    if ratio <= 0.8:
        return "excellent"
    if ratio <= 0.9:
        return "good"
    if ratio <= 1.05:
        return "average"
    if ratio <= 1.2:
        return "below_average"
    return "poor"


def improvement_opportunity(user_value: float, target: float, higher_is_better: bool = False) -> float:
    """Percentage gap between the user value and the category target, never negative."""
    if higher_is_better:
        if target <= 0:
            return 0.0
        return max(0.0, (target - user_value) / target * 100)
    if user_value <= 0:
        return 0.0
    return max(0.0, (user_value - target) / user_value * 100)


def compare_to_benchmark(category: str, user_value: float, references: Dict[str, float],
                         target: float, peer_key: str = "similar_homes") -> BenchmarkComparison:
    """Rank a user aggregate against reference population values."""
    higher = HIGHER_IS_BETTER.get(category, False)
    peer = references[peer_key]
    return BenchmarkComparison(
        category=category,
        user_value=round(float(user_value), 2),
        benchmarks=dict(references),
        percentile=calculate_percentile(user_value, peer, higher),
        ranking=get_ranking(user_value, peer, higher),
        improvement_opportunity=round(improvement_opportunity(user_value, target, higher), 2),
    )


def generate_benchmark_comparisons(daily: pd.DataFrame,
                                   benchmarks: Optional[Dict[str, Dict[str, float]]] = None) -> List[BenchmarkComparison]:
    """
    Compare monthly consumption and cost plus average efficiency with references.

    Monthly values are the mean daily total scaled to 30 days.
    """
    if daily.empty:
        return []
    refs = benchmarks or DEFAULT_CONFIG["benchmarks"]
    user_values = {
        "consumption": daily["consumption"].mean() * 30,
        "cost": daily["cost"].mean() * 30,
        "efficiency": daily["efficiency"].mean(),
    }
    comparisons = []
    for category, value in user_values.items():
        if category not in refs or pd.isna(value):
            continue
        ref = {k: v for k, v in refs[category].items() if k != "target"}
        comparisons.append(compare_to_benchmark(category, value, ref, refs[category]["target"]))
    return comparisons


# ────────────────────────────────────────────────────────────────────────────────
# FORECASTS
# ────────────────────────────────────────────────────────────────────────────────


def project(recent_average: float, trend: Optional[EnergyTrend], horizon: int = 30) -> float:
    """Apply a trend's signed magnitude to the recent average and scale to the horizon."""
    per_period = recent_average
    if trend is not None and trend.direction == "increasing":
        per_period *= 1 + trend.magnitude / 100
    elif trend is not None and trend.direction == "decreasing":
        per_period *= 1 - trend.magnitude / 100
    return per_period * horizon


def generate_predictive_insights(daily: pd.DataFrame, trends: List[EnergyTrend],
                                 config: Optional[Dict[str, Any]] = None) -> List[PredictiveInsight]:
    """
    Consumption and cost projections for the forecast horizon.

    The consumption alert fires above 20% over baseline, the cost alert above 15%.
    """
    if daily.empty:
        return []
    cfg = config or DEFAULT_CONFIG
    horizon = cfg["analytics"]["forecast_horizon_days"]
    window = cfg["analytics"]["anomaly_window_days"]
    rate = cfg["tariff"]["analytics_rate_per_kwh"]

    avg = float(daily["consumption"].tail(window).mean())
    trend = next((t for t in trends if t.metric == "consumption"), None)
    predicted = project(avg, trend, horizon)
    baseline = avg * horizon

    insights = [PredictiveInsight(
        type="consumption",
        prediction=round(predicted, 2),
        baseline=round(baseline, 2),
        confidence=78,
        timeframe=f"Next {horizon} days",
        alert_level="warning" if predicted > baseline * 1.2 else "info",
        factors=["Current usage patterns", "Seasonal trends", "Device efficiency"],
        recommendations=[
            "Monitor peak hour usage",
            "Consider energy-saving settings",
            "Schedule high-consumption activities during off-peak hours",
        ],
    )]

    predicted_cost = predicted * rate
    baseline_cost = baseline * rate
    insights.append(PredictiveInsight(
        type="cost",
        prediction=round(predicted_cost, 2),
        baseline=round(baseline_cost, 2),
        confidence=82,
        timeframe="Next monthly bill",
        alert_level="warning" if predicted_cost > baseline_cost * 1.15 else "info",
        factors=["Consumption trends", "Current tariff rates", "Seasonal adjustments"],
        recommendations=[
            "Enable energy-saving modes on major appliances",
            "Consider time-of-use tariff plans",
            "Implement smart scheduling for devices",
        ],
    ))
    return insights


# ────────────────────────────────────────────────────────────────────────────────
# EFFICIENCY, COST AND CARBON
# ────────────────────────────────────────────────────────────────────────────────


def device_efficiency(device: Device) -> float:
    efficiency = 70.0
    if device.energy_saving_mode:
        efficiency += 15
    if device.efficiency_rating == "A++":
        efficiency += 10
    elif device.efficiency_rating == "A+":
        efficiency += 5
    return efficiency


def calculate_efficiency_score(devices: List[Device], daily: pd.DataFrame) -> EfficiencyScore:
    """Per-category device efficiency plus weekly and monthly point efficiency."""
    categories = {}
    for name, types in EFFICIENCY_CATEGORIES.items():
        members = [d for d in devices if d.device_type in types]
        if not members:
            categories[name] = 75.0
        else:
            categories[name] = sum(device_efficiency(d) for d in members) / len(members)

    overall = sum(categories.values()) / len(categories)
    weekly = float(daily["efficiency"].tail(7).mean()) if not daily.empty else 0.0
    monthly = float(daily["efficiency"].tail(30).mean()) if not daily.empty else 0.0
    return EfficiencyScore(
        overall=round(overall),
        categories={k: round(v) for k, v in categories.items()},
        trends={"weekly": round(weekly), "monthly": round(monthly)},
    )


def _device_sums(points: pd.DataFrame) -> Dict[str, float]:
    sums: Dict[str, float] = {}
    for breakdown in points["device_breakdown"]:
        for key, kwh in breakdown.items():
            sums[key] = sums.get(key, 0.0) + kwh
    return sums


def analyze_costs(points: pd.DataFrame, devices: List[Device],
                  rate: Optional[float] = None) -> CostAnalysis:
    """Cost over the given points with a per-device breakdown by device name."""
    rate = DEFAULT_CONFIG["tariff"]["analytics_rate_per_kwh"] if rate is None else rate
    if points.empty:
        return CostAnalysis(total=0.0, breakdown={}, projected=0.0, savings_opportunity=0.0)
    total = float(points["cost"].sum())
    sums = _device_sums(points)
    breakdown = {d.name: round(sums.get(d.device_id, 0.0) * rate, 2) for d in devices}
    return CostAnalysis(
        total=round(total, 2),
        breakdown=breakdown,
        projected=round(total * 1.1, 2),
        savings_opportunity=round(total * 0.15, 2),
    )


def analyze_carbon_footprint(points: pd.DataFrame, devices: List[Device],
                             factor: Optional[float] = None) -> CarbonFootprintAnalysis:
    factor = DEFAULT_CONFIG["tariff"]["carbon_kg_per_kwh"] if factor is None else factor
    if points.empty:
        return CarbonFootprintAnalysis(current_month=0.0, sources={})
    sums = _device_sums(points)
    return CarbonFootprintAnalysis(
        current_month=round(float(points["carbon_footprint"].sum()), 2),
        sources={d.name: round(sums.get(d.device_id, 0.0) * factor, 2) for d in devices},
    )
