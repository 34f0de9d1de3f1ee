"""
Data quality module for energy telemetry.

This module validates raw reading candidates, scores their trustworthiness
and reports on the quality of accumulated readings.
"""
import math
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Iterable

import numpy as np
import pandas as pd

from config import DEFAULT_CONFIG
from errors import ValidationError
from models import Reading, QUALITY_CATEGORIES, reading_identity, to_utc

logger = logging.getLogger(__name__)

# Accepted spellings for incoming fields
FIELD_ALIASES = {
    "timestamp": ("timestamp",),
    "power": ("power",),
    "voltage": ("voltage",),
    "current": ("current",),
    "frequency": ("frequency",),
    "power_factor": ("power_factor", "powerFactor"),
    "consumption": ("consumption", "consumption_delta", "consumptionDelta"),
    "device_id": ("device_id", "deviceId"),
    "meter_id": ("meter_id", "meterId"),
    "reading_id": ("reading_id", "readingId", "id"),
}

NUMERIC_FIELDS = ("power", "voltage", "current", "frequency", "power_factor", "consumption")


@dataclass
class DataQualityMetrics:
    """Data quality metrics container."""
    total_records: int = 0
    readings_by_quality: Dict[str, int] = field(default_factory=dict)
    anomalies_by_tag: Dict[str, int] = field(default_factory=dict)
    readings_per_device: Dict[str, int] = field(default_factory=dict)
    reading_frequency: Dict[str, pd.Timedelta] = field(default_factory=dict)
    average_score: float = 0.0

    @property
    def degraded_ratio(self) -> float:
        """Share of readings below excellent quality."""
        if self.total_records == 0:
            return 0.0
        return 1 - self.readings_by_quality.get("excellent", 0) / self.total_records

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary."""
        return {
            "total_records": self.total_records,
            "readings_by_quality": self.readings_by_quality,
            "anomalies_by_tag": self.anomalies_by_tag,
            "readings_per_device": self.readings_per_device,
            "average_score": self.average_score,
            "degraded_ratio": self.degraded_ratio,
            "avg_reading_frequency": {
                device: freq.total_seconds() / 3600  # Convert to hours
                for device, freq in self.reading_frequency.items()
            }
        }


def _pick(raw: Dict[str, Any], name: str) -> Any:
    for alias in FIELD_ALIASES[name]:
        if alias in raw and raw[alias] is not None:
            return raw[alias]
    return None


def validate_reading(raw: Dict[str, Any], meter_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Check a raw reading candidate and normalise its field names.

    Args:
        raw: Incoming reading with camelCase or snake_case keys
        meter_id: Meter to attribute the reading to when the payload omits it

    Returns:
        Dictionary with snake_case keys, floats and an aware UTC timestamp

    Raises:
        ValidationError: when a field is missing, non-numeric or non-finite,
            or when the consumption delta is negative
    """
    if not isinstance(raw, dict):
        raise ValidationError("Reading must be a mapping")

    missing = []
    bad = []
    clean: Dict[str, Any] = {}

    ts = _pick(raw, "timestamp")
    if ts is None:
        missing.append("timestamp")
    else:
        try:
            clean["timestamp"] = to_utc(ts)
        except (ValueError, TypeError):
            bad.append("timestamp")

    for name in NUMERIC_FIELDS:
        value = _pick(raw, name)
        if value is None:
            missing.append(name)
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            bad.append(name)
            continue
        if not math.isfinite(number):
            bad.append(name)
            continue
        clean[name] = number

    clean["meter_id"] = _pick(raw, "meter_id") or meter_id
    if not clean["meter_id"]:
        missing.append("meter_id")
    clean["device_id"] = _pick(raw, "device_id")
    clean["reading_id"] = _pick(raw, "reading_id")

    if missing or bad:
        parts = []
        if missing:
            parts.append(f"missing {', '.join(missing)}")
        if bad:
            parts.append(f"invalid {', '.join(bad)}")
        raise ValidationError(f"Rejected reading: {'; '.join(parts)}", missing + bad)

    if clean["consumption"] < 0:
        raise ValidationError("Rejected reading: negative consumption delta", ["consumption"])
    if clean["power"] < 0:
        raise ValidationError("Rejected reading: negative power", ["power"])

    return clean


def _outside(value: float, band) -> bool:
    return value < band[0] or value > band[1]


def score_reading(voltage: float, frequency: float, power_factor: float,
                  quality_cfg: Optional[Dict[str, Any]] = None) -> int:
    """Quality score from 100 down, penalised per out-of-band measurement."""
    cfg = quality_cfg or DEFAULT_CONFIG["quality"]
    hard, soft = cfg["hard_penalty"], cfg["soft_penalty"]
    score = 100

    if _outside(voltage, cfg["voltage_hard"]):
        score -= hard
    elif _outside(voltage, cfg["voltage_soft"]):
        score -= soft

    if _outside(frequency, cfg["frequency_hard"]):
        score -= hard
    elif _outside(frequency, cfg["frequency_soft"]):
        score -= soft

    if power_factor < cfg["power_factor_hard"]:
        score -= hard
    elif power_factor < cfg["power_factor_soft"]:
        score -= soft

    return score


def quality_category(score: int, quality_cfg: Optional[Dict[str, Any]] = None) -> str:
    cuts = (quality_cfg or DEFAULT_CONFIG["quality"])["categories"]
    if score >= cuts["excellent"]:
        return "excellent"
    if score >= cuts["good"]:
        return "good"
    if score >= cuts["fair"]:
        return "fair"
    return "poor"


def detect_reading_anomalies(power: float, voltage: float, frequency: float, power_factor: float,
                             quality_cfg: Optional[Dict[str, Any]] = None) -> List[str]:
    """Anomaly tags for one reading; independent of the quality score."""
    limits = (quality_cfg or DEFAULT_CONFIG["quality"])["anomaly_limits"]
    tags = []
    if _outside(voltage, limits["voltage"]):
        tags.append("voltage_out_of_range")
    if _outside(frequency, limits["frequency"]):
        tags.append("frequency_anomaly")
    if power_factor < limits["power_factor"]:
        tags.append("poor_power_factor")
    if power > limits["power"]:
        tags.append("high_power_consumption")
    return tags


def build_reading(raw: Dict[str, Any], meter_id: Optional[str] = None,
                  quality_cfg: Optional[Dict[str, Any]] = None) -> Reading:
    """
    Validate, score and tag a raw reading.

    Degraded quality never rejects the reading; it is recorded on the
    returned Reading for downstream consumers.
    """
    clean = validate_reading(raw, meter_id)
    score = score_reading(clean["voltage"], clean["frequency"], clean["power_factor"], quality_cfg)
    tags = detect_reading_anomalies(
        clean["power"], clean["voltage"], clean["frequency"], clean["power_factor"], quality_cfg
    )
    reading_id = clean["reading_id"] or reading_identity(
        clean["meter_id"], clean["device_id"], clean["timestamp"]
    )
    return Reading(
        reading_id=str(reading_id),
        meter_id=clean["meter_id"],
        timestamp=clean["timestamp"],
        power=clean["power"],
        voltage=clean["voltage"],
        current=clean["current"],
        frequency=clean["frequency"],
        power_factor=clean["power_factor"],
        consumption=clean["consumption"],
        device_id=clean["device_id"],
        quality=quality_category(score, quality_cfg),
        quality_score=score,
        anomalies=tuple(tags),
    )


def meter_quality(readings: Iterable[Reading]) -> str:
    """Aggregate quality of a meter over a set of readings."""
    qualities = [r.quality for r in readings]
    if not qualities:
        return "poor"

    excellent = sum(1 for q in qualities if q == "excellent")
    good = sum(1 for q in qualities if q == "good")
    excellent_ratio = excellent / len(qualities)
    good_ratio = (excellent + good) / len(qualities)

    if excellent_ratio > 0.8:
        return "excellent"
    if good_ratio > 0.7:
        return "good"
    if good_ratio > 0.5:
        return "fair"
    return "poor"


def calculate_device_reading_frequency(df: pd.DataFrame) -> Dict[str, pd.Timedelta]:
    """
    Calculate the average time between readings for each device.

    Args:
        df: DataFrame with device_id and timestamp columns

    Returns:
        Dictionary mapping device_id to average reading frequency
    """
    freqs = {}
    for device, group in df.groupby('device_id'):
        group = group.sort_values('timestamp')
        time_diffs = group['timestamp'].diff().dropna()
        if not time_diffs.empty:
            # Mean frequency excluding outliers
            q1, q3 = time_diffs.quantile([0.25, 0.75])
            iqr = q3 - q1
            valid_diffs = time_diffs[(time_diffs >= q1 - 1.5 * iqr) & (time_diffs <= q3 + 1.5 * iqr)]
            if not valid_diffs.empty:
                freqs[device] = valid_diffs.mean()
    return freqs


def summarize_readings(readings: List[Reading]) -> DataQualityMetrics:
    """
    Calculate quality metrics over accepted readings.

    Args:
        readings: Readings as returned by the telemetry store

    Returns:
        DataQualityMetrics
    """
    metrics = DataQualityMetrics(total_records=len(readings))
    if not readings:
        return metrics

    df = pd.DataFrame({
        "device_id": [r.device_id or r.meter_id for r in readings],
        "timestamp": pd.to_datetime([r.timestamp for r in readings], utc=True),
        "quality": [r.quality for r in readings],
        "score": [r.quality_score for r in readings],
    })

    counts = df["quality"].value_counts().to_dict()
    metrics.readings_by_quality = {q: int(counts.get(q, 0)) for q in QUALITY_CATEGORIES}
    metrics.average_score = float(np.round(df["score"].mean(), 2))
    metrics.readings_per_device = {k: int(v) for k, v in df.groupby("device_id").size().items()}

    tags: Dict[str, int] = {}
    for r in readings:
        for tag in r.anomalies:
            tags[tag] = tags.get(tag, 0) + 1
    metrics.anomalies_by_tag = tags

    metrics.reading_frequency = calculate_device_reading_frequency(df)

    if metrics.degraded_ratio > 0.5:
        logger.warning("More than half of %d readings are below excellent quality", len(readings))

    return metrics
