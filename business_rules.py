"""
Business Rules Configuration
Centralized definitions for replenishment formulas, forecasting constants,
vendor weighting and scheduling cadences.
This file allows rules to be changed in one place without modifying engine code.
"""

import copy
from datetime import datetime

# ===== REPLENISHMENT RULES =====

REPLENISHMENT_RULES = {
    "days_of_cover": {
        # Default target days of cover by store tier, used when a product
        # does not carry its own supplyDurationDays
        "PREMIUM": 90,
        "STANDARD": 60,
        "BASIC": 30,
    },
    "default_store_tier": "STANDARD",

    # Safety stock = ceil(avg daily usage * multiplier * (1 + variability))
    "safety_stock_multiplier": 1.5,

    # Suggestions are only valid for a bounded window, after which they
    # have to be regenerated
    "suggestion_validity_days": 7,

    "priority": {
        # Safety stock is scaled by the forecast confidence before the HIGH check
        "high_confidence_threshold": 0.8,
        "high_confidence_adjustment": 1.2,
        "medium_confidence_threshold": 0.6,
        "medium_confidence_adjustment": 1.0,
        "low_confidence_adjustment": 0.8,
        # MEDIUM when available <= adjusted reorder point * this ratio
        "medium_rop_ratio": 0.8,
    },

    "order": {
        "order_type": "SYSTEM_INITIATED",
        "initial_status": "PENDING_FM_APPROVAL",
    },
}


# ===== FORECASTING RULES =====

FORECAST_RULES = {
    # Fewer observations than this -> simple trailing average fallback
    "min_history_for_ensemble": 30,
    "fallback_window": 7,
    "fallback_confidence": 0.5,
    "fallback_seasonality": 1.0,

    "horizon_days": 30,
    "short_horizon_days": 7,

    "holt_winters": {
        "alpha": 0.3,   # level smoothing
        "beta": 0.3,    # trend smoothing
        "gamma": 0.3,   # seasonal smoothing
        "season_length": 7,
    },

    "moving_average": {
        "max_window": 14,
        # Monday .. Sunday
        "weekday_multipliers": [0.9, 0.9, 1.0, 1.0, 1.2, 1.3, 1.1],
    },

    "model_weights": {
        "exponential_smoothing": 0.3,
        "seasonal_decomposition": 0.4,
        "linear_regression": 0.2,
        "moving_average": 0.1,
    },

    "min_confidence": 0.1,
    "interval_z_score": 1.96,

    # Holdout used for MAPE / RMSE model metrics
    "backtest_days": 7,
}


# ===== WEATHER RULES =====

WEATHER_RULES = {
    "hot_temperature_f": 85,
    "cold_temperature_f": 32,
    "extreme_temperature_impact": 0.2,
    "precipitation_threshold": 0.1,
    "precipitation_impact": 0.3,
    "seasonal_event_impact": {
        "storm": 0.5,
        "heatwave": 0.3,
    },
    "max_weather_index": 1.0,
}


# ===== VENDOR SELECTION RULES =====

VENDOR_SELECTION_RULES = {
    "default_weights": {
        "cost_weight": 0.5,
        "lead_time_weight": 0.3,
        "sla_weight": 0.2,
    },
    # Fixed, not configurable per request
    "preference_weight": 0.1,
    "neutral_sla_score": 0.5,

    "reasoning_thresholds": {
        "excellent": 0.9,
        "good": 0.7,
    },

    "validation": {
        "min_sla_compliance": 0.8,
        "min_quality_score": 0.8,
        "min_invoice_accuracy": 0.95,
        "long_lead_time_days": 14,
    },

    "performance_rating": {
        "EXCELLENT": 0.9,
        "GOOD": 0.8,
        "FAIR": 0.7,
        # Anything below FAIR is POOR
    },
}


# ===== SCHEDULE RULES =====

SCHEDULE_RULES = {
    "timezone": "America/New_York",
    "jobs": {
        "NIGHTLY": {
            "enabled": True,
            "time_of_day": "02:00",
            "lookback_days": 90,
            "description": "Full pass over all active stores and products",
        },
        "WEEKLY": {
            "enabled": True,
            "time_of_day": "05:00",
            "day_of_week": 0,  # Monday
            "lookback_days": 90,
            "description": "Weekly review (currently the same pass as nightly)",
        },
        "MONTHLY": {
            "enabled": True,
            "time_of_day": "04:00",
            "day_of_month": 1,
            "lookback_days": 90,
            "description": "Monthly review (currently the same pass as nightly)",
        },
    },
    # Upper bound on parallel store workers; None lets joblib decide
    "max_store_workers": 8,
    "history_limit": 100,
}


# ===== TRIGGER RULES =====

TRIGGER_RULES = {
    "lookback_days": 30,
    "trigger_types": ["STOCKOUT_ALERT", "WEATHER_EVENT", "PROMOTION", "VENDOR_DISRUPTION", "MANUAL"],
    # Synthetic weather forced onto the forecast by a weather trigger
    "weather_override": {
        "temperature": 70,
        "precipitation": 1.0,
        "seasonal_event": "storm",
    },
    "default_promotion_discount_percent": 10,
    "error_severity": {
        "default": "MEDIUM",
        "CRITICAL": "HIGH",
    },
}


# ===== ALERT RULES =====

ALERT_RULES = {
    # Replenishment requests above this cost raise a COST_VARIANCE alert
    "high_cost_threshold": 1000,
    "stockout_risk": {
        "high_days": 7,
        "medium_days": 14,
    },
    # Seasonality factor above this flags a high demand period
    "high_demand_seasonality": 1.2,
}


# ===== SEASONAL EVENTS =====

SEASONAL_EVENTS = [
    {
        "name": "Spring Cleaning",
        "start": (3, 15),
        "end": (5, 15),
        "product_categories": ["Cleaning Supplies", "Paper Products"],
        "impact_multiplier": 1.4,
    },
    {
        "name": "Back to School",
        "start": (8, 15),
        "end": (9, 15),
        "product_categories": ["Office Supplies", "Paper Products"],
        "impact_multiplier": 1.3,
    },
    {
        "name": "Holiday Season",
        "start": (11, 15),
        "end": (1, 15),
        "product_categories": ["Cleaning Supplies", "Paper Products", "Packaging"],
        "impact_multiplier": 1.5,
    },
    {
        "name": "Winter Storm Season",
        "start": (12, 1),
        "end": (3, 1),
        "product_categories": ["Maintenance Supplies", "Safety Equipment"],
        "impact_multiplier": 1.2,
    },
]


# ===== HELPER FUNCTIONS =====

def get_replenishment_rules(overrides=None):
    """
    Return a copy of the replenishment rules with optional overrides merged in.

    Args:
        overrides: Partial dict; nested dicts are merged one level deep

    Returns:
        New rules dictionary (the module constant is never mutated)
    """
    rules = copy.deepcopy(REPLENISHMENT_RULES)
    if not overrides:
        return rules
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(rules.get(key), dict):
            rules[key].update(value)
        else:
            rules[key] = value
    return rules


def get_days_of_cover(store_tier, rules=None):
    """
    Get the default days of cover for a store tier.

    Args:
        store_tier: 'PREMIUM', 'STANDARD' or 'BASIC' (case insensitive)
        rules: Replenishment rules dict (defaults to REPLENISHMENT_RULES)

    Returns:
        Days of cover; unknown tiers fall back to the default tier
    """
    rules = rules or REPLENISHMENT_RULES
    cover = rules["days_of_cover"]
    tier = str(store_tier or rules["default_store_tier"]).upper()
    return cover.get(tier, cover[rules["default_store_tier"]])


def get_confidence_adjustment(confidence, rules=None):
    """Safety-stock multiplier used by the HIGH priority check."""
    priority = (rules or REPLENISHMENT_RULES)["priority"]
    if confidence > priority["high_confidence_threshold"]:
        return priority["high_confidence_adjustment"]
    if confidence > priority["medium_confidence_threshold"]:
        return priority["medium_confidence_adjustment"]
    return priority["low_confidence_adjustment"]


def get_schedule_config(job_type):
    """
    Get the schedule configuration for a cadence job.

    Args:
        job_type: 'NIGHTLY', 'WEEKLY' or 'MONTHLY'

    Returns:
        Copy of the job's schedule dict

    Raises:
        ValueError: If the job type has no schedule
    """
    key = str(job_type).upper()
    jobs = SCHEDULE_RULES["jobs"]
    if key not in jobs:
        raise ValueError(f"No schedule configured for job type '{job_type}'")
    return dict(jobs[key])


def parse_time_of_day(value):
    """
    Parse an 'HH:MM' string into an (hour, minute) tuple.

    Raises:
        ValueError: If the string is not a valid 24h time
    """
    try:
        hours, minutes = (int(part) for part in str(value).split(":"))
    except ValueError:
        raise ValueError(f"Invalid time of day '{value}', expected HH:MM")
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"Invalid time of day '{value}', expected HH:MM")
    return hours, minutes


def get_trigger_rules(overrides=None):
    """Return a copy of the trigger rules with optional top-level overrides."""
    rules = copy.deepcopy(TRIGGER_RULES)
    if overrides:
        rules.update(overrides)
    return rules


def get_trigger_error_severity(trigger_priority):
    """Severity recorded for per-store errors raised while processing a trigger."""
    severities = TRIGGER_RULES["error_severity"]
    return severities.get(str(trigger_priority).upper(), severities["default"])


def get_active_seasonal_events(as_of):
    """
    Return the configured seasonal events active on a date.

    Windows may wrap the year end (e.g. Nov 15 - Jan 15).

    Args:
        as_of: date or datetime

    Returns:
        List of event dicts
    """
    key = (as_of.month, as_of.day)
    active = []
    for event in SEASONAL_EVENTS:
        start, end = event["start"], event["end"]
        if start <= end:
            in_window = start <= key <= end
        else:
            in_window = key >= start or key <= end
        if in_window:
            active.append(event)
    return active


# ===== DOCUMENTATION EXPORT =====

def export_business_rules_documentation(output_path="BUSINESS_RULES_DOCUMENTATION.md"):
    """
    Export all business rules to a markdown documentation file.

    Args:
        output_path: Path for the output markdown file
    """
    with open(output_path, 'w') as f:
        f.write("# Replenishment Business Rules\n\n")
        f.write("Auto-generated documentation of the replenishment engine configuration.\n\n")
        f.write(f"**Generated:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n\n")

        f.write("---\n\n")
        f.write("## Days of Cover by Store Tier\n\n")
        f.write("| Tier | Days |\n")
        f.write("|------|------|\n")
        for tier, days in REPLENISHMENT_RULES["days_of_cover"].items():
            f.write(f"| {tier} | {days} |\n")
        f.write("\n")

        f.write("## Formulas\n\n")
        f.write("- Safety Stock: `ceil(avg_daily_usage * safety_stock_multiplier * (1 + variability))`\n")
        f.write("- Reorder Point: `ceil(safety_stock + lead_time_days * avg_daily_usage)`\n")
        f.write("- Target On-Hand: `ceil(avg_daily_usage * days_of_cover)`\n")
        f.write("- Quantity Needed: `max(0, target_on_hand - available - in_transit)`\n\n")

        f.write("## Scheduled Jobs\n\n")
        f.write("| Job | Enabled | Time | Lookback (days) | Description |\n")
        f.write("|-----|---------|------|-----------------|-------------|\n")
        for job_type, job in SCHEDULE_RULES["jobs"].items():
            f.write(f"| {job_type} | {job['enabled']} | {job['time_of_day']} | "
                    f"{job['lookback_days']} | {job['description']} |\n")
        f.write("\n")

        f.write("## Rule Configurations\n\n")
        for title, rules in [
            ("Replenishment Rules", REPLENISHMENT_RULES),
            ("Forecast Rules", FORECAST_RULES),
            ("Weather Rules", WEATHER_RULES),
            ("Vendor Selection Rules", VENDOR_SELECTION_RULES),
            ("Trigger Rules", TRIGGER_RULES),
            ("Alert Rules", ALERT_RULES),
        ]:
            f.write(f"### {title}\n\n")
            f.write(f"```python\n{rules}\n```\n\n")


if __name__ == "__main__":
    # Export documentation when run directly
    export_business_rules_documentation()
    print("Business rules documentation exported to BUSINESS_RULES_DOCUMENTATION.md")
