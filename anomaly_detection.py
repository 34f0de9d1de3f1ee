"""
Anomaly detection for energy consumption data.

This module turns statistically unusual windows of data points, and
outlying hourly device consumption, into actionable insights.
"""
import numpy as np
import pandas as pd
from typing import Tuple, Dict, List, Any
import logging

from models import Insight

logger = logging.getLogger(__name__)


def detect_anomalies(points: pd.DataFrame, spike_factor: float = 2.0,
                     efficiency_floor: float = 60.0) -> List[Insight]:
    """
    Flag consumption spikes and efficiency drops over a window of data points.

    Args:
        points: DataFrame with consumption and efficiency columns, already
            restricted to the window of interest
        spike_factor: Spike fires when the window maximum exceeds this multiple
            of the window average
        efficiency_floor: Efficiency drop fires when the window average
            efficiency is below this value

    Returns:
        List of anomaly insights with the triggering values attached
    """
    insights: List[Insight] = []
    if points.empty:
        return insights

    avg_consumption = float(points["consumption"].mean())
    max_consumption = float(points["consumption"].max())

    if max_consumption > avg_consumption * spike_factor:
        above = (max_consumption / avg_consumption - 1) * 100 if avg_consumption else float("inf")
        logger.warning("Consumption spike: max %.2f kWh vs average %.2f kWh", max_consumption, avg_consumption)
        insights.append(Insight(
            id="consumption_spike",
            title="Unusual Consumption Spike Detected",
            description=f"Consumption reached {max_consumption:.1f} kWh, which is {above:.0f}% above average",
            category="anomaly",
            severity="medium",
            confidence=85,
            data={"spike": max_consumption, "average": avg_consumption},
            recommendations=[
                "Check for devices left running unnecessarily",
                "Review recent appliance usage patterns",
                "Consider implementing usage alerts",
            ],
        ))

    avg_efficiency = float(points["efficiency"].mean())
    if avg_efficiency < efficiency_floor:
        logger.warning("Efficiency drop: average %.1f below %.1f", avg_efficiency, efficiency_floor)
        insights.append(Insight(
            id="efficiency_drop",
            title="Energy Efficiency Below Normal",
            description=f"Current efficiency is {avg_efficiency:.0f}%, significantly below optimal levels",
            category="anomaly",
            severity="high",
            confidence=90,
            data={"efficiency": avg_efficiency},
            recommendations=[
                "Enable energy-saving modes on all devices",
                "Check for maintenance needs on major appliances",
                "Review temperature settings on AC and water heater",
            ],
        ))

    return insights


def detect_consumption_anomalies(df: pd.DataFrame, threshold: float = 3.0,
                                 min_points: int = 10) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Detect outlying hourly consumption per device.

    Args:
        df: Readings DataFrame with device_id, meter_id, timestamp, consumption columns
        threshold: Z-score threshold for anomaly detection
        min_points: Minimum number of hourly buckets a device needs

    Returns:
        DataFrame with anomalies, dictionary with anomaly statistics
    """
    anomaly_stats = {
        "devices_with_anomalies": [],
        "total_anomalies": 0,
        "anomalies_by_device": {},
    }
    if df.empty:
        return pd.DataFrame(), anomaly_stats

    df = df.copy()
    df["device_key"] = df["device_id"].fillna(df["meter_id"])
    results = []

    for device, group in df.groupby("device_key"):
        hourly = (
            group.assign(hour=group["timestamp"].dt.floor("h"))
            .groupby("hour")["consumption"].sum()
            .reset_index()
        )
        if len(hourly) < min_points:  # Need enough data points
            continue

        mean = hourly["consumption"].mean()
        std = hourly["consumption"].std()
        if not std or np.isnan(std):  # Skip if standard deviation is zero
            continue

        hourly["z_score"] = (hourly["consumption"] - mean) / std
        anomalies = hourly[hourly["z_score"].abs() > threshold].copy()

        if not anomalies.empty:
            anomaly_stats["devices_with_anomalies"].append(device)
            anomaly_stats["total_anomalies"] += len(anomalies)
            anomaly_stats["anomalies_by_device"][device] = len(anomalies)

            anomalies["anomaly_type"] = np.where(
                anomalies["z_score"] > 0, "High Consumption", "Low Consumption"
            )
            anomalies["device_id"] = device
            anomalies["expected_consumption"] = mean
            results.append(anomalies)

    if not results:
        return pd.DataFrame(), anomaly_stats

    anomalies_df = pd.concat(results, ignore_index=True)
    return anomalies_df, anomaly_stats


def outlier_insights(anomalies_df: pd.DataFrame) -> List[Insight]:
    """One low-severity insight per outlying device-hour."""
    insights = []
    for row in anomalies_df.itertuples(index=False):
        insights.append(Insight(
            id=f"outlier_{row.device_id}_{row.hour.strftime('%Y%m%d%H')}",
            title=f"{row.anomaly_type} on {row.device_id}",
            description=(
                f"{row.consumption:.2f} kWh in the hour starting {row.hour.isoformat()} "
                f"against an hourly mean of {row.expected_consumption:.2f} kWh"
            ),
            category="anomaly",
            severity="low",
            confidence=min(99.0, 50 + 10 * abs(row.z_score)),
            data={
                "device_id": row.device_id,
                "hour": row.hour.isoformat(),
                "consumption": float(row.consumption),
                "expected_consumption": float(row.expected_consumption),
                "z_score": float(row.z_score),
            },
            recommendations=["Verify the device was operating as intended during this hour"],
        ))
    return insights
