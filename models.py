"""
Data model for energy telemetry.

Readings are immutable once accepted. Device and Meter records carry
mutable statistics that only the statistics aggregator writes.
"""
from __future__ import annotations
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Any, Tuple

import pandas as pd

QUALITY_CATEGORIES = ("excellent", "good", "fair", "poor")

DEVICE_TYPES = (
    "ac", "light", "fan", "tv", "refrigerator", "washing_machine",
    "water_heater", "dishwasher", "microwave", "router", "meter", "other",
)

EFFICIENCY_RATINGS = ("A++", "A+", "A", "B", "C", "D", "E")

PATTERN_KINDS = ("peak", "valley", "steady", "variable")
TREND_DIRECTIONS = ("increasing", "decreasing", "stable")
SIGNIFICANCE_LEVELS = ("low", "moderate", "high", "critical")
RANKINGS = ("excellent", "good", "average", "below_average", "poor")
INSIGHT_CATEGORIES = ("anomaly", "trend", "optimization", "prediction")
SEVERITIES = ("low", "medium", "high")
ALERT_LEVELS = ("info", "warning", "critical")

# Namespace for deterministic reading identities
READING_NAMESPACE = uuid.UUID("6f1c1f7e-3a0b-4c52-9d43-2b8f0f4a6e11")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(ts: Any) -> datetime:
    """Coerce a datetime, pandas Timestamp or ISO string into an aware UTC datetime."""
    stamp = pd.Timestamp(ts)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    return stamp.tz_convert("UTC").to_pydatetime()


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def reading_identity(meter_id: str, device_id: Optional[str], timestamp: datetime) -> str:
    """Identity used for idempotent writes: same meter, device and instant → same id."""
    key = f"{meter_id}|{device_id or ''}|{to_utc(timestamp).isoformat()}"
    return str(uuid.uuid5(READING_NAMESPACE, key))


@dataclass(frozen=True)
class Reading:
    """One accepted sample."""
    reading_id: str
    meter_id: str
    timestamp: datetime
    power: float               # W
    voltage: float             # V
    current: float             # A
    frequency: float           # Hz
    power_factor: float
    consumption: float         # kWh delta
    device_id: Optional[str] = None
    quality: str = "excellent"
    quality_score: int = 100
    anomalies: Tuple[str, ...] = ()

    @property
    def source(self) -> str:
        return "device" if self.device_id else "meter"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        d["anomalies"] = list(self.anomalies)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Reading":
        return cls(
            reading_id=data["reading_id"],
            meter_id=data["meter_id"],
            timestamp=to_utc(data["timestamp"]),
            power=float(data["power"]),
            voltage=float(data["voltage"]),
            current=float(data["current"]),
            frequency=float(data["frequency"]),
            power_factor=float(data["power_factor"]),
            consumption=float(data["consumption"]),
            device_id=data.get("device_id"),
            quality=data.get("quality", "excellent"),
            quality_score=int(data.get("quality_score", 100)),
            anomalies=tuple(data.get("anomalies") or ()),
        )


@dataclass
class DeviceStatistics:
    total_energy_consumed: float = 0.0
    average_power_usage: float = 0.0
    peak_power_usage: float = 0.0
    operating_hours: float = 0.0
    reading_count: int = 0
    last_reading: Optional[datetime] = None


@dataclass
class Device:
    device_id: str
    meter_id: str
    name: str
    device_type: str = "other"
    location: str = ""
    power_rating: float = 0.0
    is_active: bool = True
    is_online: bool = True
    energy_saving_mode: bool = False
    efficiency_rating: str = "A"
    configuration: Dict[str, Any] = field(default_factory=lambda: {
        "power_saving_mode": False,
        "alerts_enabled": True,
        "update_interval": 300000,
    })
    statistics: DeviceStatistics = field(default_factory=DeviceStatistics)


@dataclass
class MeterConfiguration:
    update_interval: int = 60000
    batch_size: int = 50
    data_retention_days: int = 90
    alert_thresholds: Dict[str, float] = field(default_factory=dict)


@dataclass
class MeterStatus:
    is_active: bool = True
    is_online: bool = True
    last_reading: Optional[datetime] = None
    errors: List[str] = field(default_factory=list)


@dataclass
class MeterStatistics:
    total_energy_consumed: float = 0.0
    average_daily_usage: float = 0.0
    peak_usage: float = 0.0
    cost_to_date: float = 0.0
    reading_count: int = 0


@dataclass
class Meter:
    meter_id: str
    user_id: str
    serial_number: str = ""
    location: str = ""
    configuration: MeterConfiguration = field(default_factory=MeterConfiguration)
    status: MeterStatus = field(default_factory=MeterStatus)
    statistics: MeterStatistics = field(default_factory=MeterStatistics)


@dataclass
class MeterReading:
    """Query output summarising a meter's most recent readings."""
    meter_id: str
    total_consumption: float
    current_power: float
    device_readings: Dict[str, Reading]
    quality: str
    timestamp: datetime
    errors: List[str] = field(default_factory=list)


@dataclass
class EnergyDataPoint:
    timestamp: datetime
    consumption: float         # kWh
    cost: float
    power_demand: float        # kW
    efficiency: float          # 0-100
    carbon_footprint: float    # kg CO2
    device_breakdown: Dict[str, float] = field(default_factory=dict)


@dataclass
class ConsumptionPattern:
    id: str
    name: str
    pattern: str
    start_hour: int
    end_hour: int
    average_consumption: float
    frequency: float
    confidence: float
    seasonality: str = "all"

    def __post_init__(self):
        self.confidence = clamp(self.confidence)


@dataclass
class EnergyTrend:
    metric: str
    direction: str
    magnitude: float
    significance: str
    period: str = ""
    factors: List[str] = field(default_factory=list)


@dataclass
class BenchmarkComparison:
    category: str
    user_value: float
    benchmarks: Dict[str, float]
    percentile: float
    ranking: str
    improvement_opportunity: float

    def __post_init__(self):
        self.percentile = clamp(self.percentile)


@dataclass
class Insight:
    id: str
    title: str
    description: str
    category: str
    severity: str
    confidence: float
    data: Dict[str, Any] = field(default_factory=dict)
    actionable: bool = True
    recommendations: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.confidence = clamp(self.confidence)


@dataclass
class PredictiveInsight:
    type: str
    prediction: float
    baseline: float
    confidence: float
    timeframe: str
    alert_level: str
    factors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.confidence = clamp(self.confidence)


@dataclass
class EfficiencyScore:
    overall: float
    categories: Dict[str, float]
    trends: Dict[str, float]


@dataclass
class CostAnalysis:
    total: float
    breakdown: Dict[str, float]
    projected: float
    savings_opportunity: float


@dataclass
class CarbonFootprintAnalysis:
    current_month: float
    sources: Dict[str, float]
