"""
Error taxonomy for telemetry ingestion.

Only ValidationError and UnknownEntityError reach callers of the ingestion
path. The others are raised inside components and handled by the meter
service, which logs them and records them on meter status.
"""
from typing import List, Optional


class TelemetryError(Exception):
    """Base class for all telemetry errors."""


class ValidationError(TelemetryError, ValueError):
    """A reading candidate is malformed and was rejected."""

    def __init__(self, message: str, fields: Optional[List[str]] = None):
        super().__init__(message)
        self.fields = fields or []


class QualityDegraded(TelemetryError):
    """A reading was accepted with a quality category below excellent."""

    def __init__(self, reading_id: str, quality: str, score: int):
        super().__init__(f"Reading {reading_id} stored with quality {quality} (score {score})")
        self.reading_id = reading_id
        self.quality = quality
        self.score = score


class AnomalyDetected(TelemetryError):
    """A reading carries anomaly tags."""

    def __init__(self, reading_id: str, tags: List[str]):
        super().__init__(f"Reading {reading_id} flagged: {', '.join(sorted(tags))}")
        self.reading_id = reading_id
        self.tags = list(tags)


class ConnectivityError(TelemetryError):
    """The telemetry store cannot be reached."""


class SyncFailure(TelemetryError):
    """A batch commit from the offline queue failed."""

    def __init__(self, message: str, batch_size: int = 0):
        super().__init__(message)
        self.batch_size = batch_size


class StatisticsUpdateFailure(TelemetryError):
    """Rolling statistics could not be updated for a reading."""


class UnknownEntityError(TelemetryError, KeyError):
    """A meter or device identifier is not registered."""

    def __str__(self):
        return str(self.args[0]) if self.args else "unknown entity"
