"""
Configuration for the energy telemetry core.
"""
import copy
import json
from typing import Dict, Any

# Default configuration
DEFAULT_CONFIG = {
    # Meter ingestion and sync settings
    "meter": {
        "update_interval": 60000,      # ms between simulated/polled readings
        "sync_interval": 30000,        # ms between offline-queue flush attempts
        "analytics_interval": 3600000, # ms between analytics recomputations
        "batch_size": 50,              # offline replay batch size
        "enable_auto_sync": True,
        "enable_offline_storage": True,
        "data_retention_days": 90,
        "samples_per_day": 24,
        "max_status_errors": 20,       # meter status.errors is trimmed to this length
        "alert_thresholds": {
            "high_usage": 5000,        # watts
            "low_voltage": 110,
            "high_voltage": 130,
            "power_factor": 0.7
        }
    },

    # Reading quality scoring
    "quality": {
        "voltage_hard": [110, 130],
        "voltage_soft": [115, 125],
        "frequency_hard": [59.8, 60.2],
        "frequency_soft": [59.9, 60.1],
        "power_factor_hard": 0.7,
        "power_factor_soft": 0.8,
        "hard_penalty": 20,
        "soft_penalty": 10,
        "categories": {
            "excellent": 90,
            "good": 75,
            "fair": 60
        },
        "anomaly_limits": {
            "voltage": [100, 140],
            "frequency": [59, 61],
            "power_factor": 0.5,
            "power": 10000             # watts
        }
    },

    # Tariff and emission factors
    "tariff": {
        "rate_per_kwh": 0.12,          # meter cost-to-date
        "analytics_rate_per_kwh": 6.5, # cost series used by analytics
        "carbon_kg_per_kwh": 0.82
    },

    # Analytics settings
    "analytics": {
        "timezone": "UTC",
        "anomaly_window_days": 7,
        "benchmark_window_days": 30,
        "spike_factor": 2.0,
        "efficiency_floor": 60,
        "zscore_threshold": 3.0,
        "min_zscore_points": 10,
        "stable_threshold_pct": 2.0,
        "forecast_horizon_days": 30,
        "quality_weights": {
            "excellent": 1.0,
            "good": 0.95,
            "fair": 0.85,
            "poor": 0.7
        }
    },

    # Reference population values (monthly for consumption and cost)
    "benchmarks": {
        "consumption": {
            "similar_homes": 450,
            "city_average": 520,
            "state_average": 480,
            "national_average": 500,
            "target": 400
        },
        "cost": {
            "similar_homes": 2925,
            "city_average": 3380,
            "state_average": 3120,
            "national_average": 3250,
            "target": 2600
        },
        "efficiency": {
            "similar_homes": 75,
            "city_average": 70,
            "state_average": 72,
            "national_average": 68,
            "target": 90
        }
    },

    # Persistence
    "telemetry_store": {
        "path": None                   # JSON-lines file, None keeps readings in memory
    },
    "offline_queue": {
        "path": None                   # JSON file, None keeps the queue in memory
    }
}


def default_config() -> Dict[str, Any]:
    """Return an independent copy of the defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def load_config(config_path: str = "telemetry_config.json") -> Dict[str, Any]:
    """
    Load configuration from file or return default if file doesn't exist.

    Args:
        config_path: Path to configuration file

    Returns:
        Configuration dictionary
    """
    try:
        with open(config_path, 'r') as f:
            config = json.load(f)
            # Merge with defaults to ensure all required keys exist
            merged_config = default_config()
            _deep_update(merged_config, config)
            return merged_config
    except (FileNotFoundError, json.JSONDecodeError):
        return default_config()


def merge_config(overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Merge a partial configuration over the defaults."""
    return _deep_update(default_config(), overrides or {})


def save_config(config: Dict[str, Any], config_path: str = "telemetry_config.json") -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration dictionary
        config_path: Path to save configuration file
    """
    with open(config_path, 'w') as f:
        json.dump(config, f, indent=4)


def _deep_update(source: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    """
    Update a nested dictionary with another nested dictionary.

    Args:
        source: Source dictionary to be updated
        update: Dictionary with updates

    Returns:
        Updated source dictionary
    """
    for key, value in update.items():
        if key in source and isinstance(source[key], dict) and isinstance(value, dict):
            _deep_update(source[key], value)
        else:
            source[key] = value
    return source
