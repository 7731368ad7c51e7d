"""
Stockout Prediction Module

Seasonal insights and alerts derived from a store's forecasts, inventory
snapshot and replenishment suggestions.

Key Features:
- Days until stockout from available stock and forecast daily usage
- Stockout risk levels (HIGH <= 7 days, MEDIUM <= 14 days)
- High demand periods (seasonality factor above 1.2)
- STOCKOUT_RISK alerts for HIGH priority suggestions
- COST_VARIANCE alerts for high-cost replenishment
"""

import numpy as np
import pandas as pd

from business_rules import ALERT_RULES, get_active_seasonal_events
from data_loader import build_inventory_lookup
from models import Priority, ReplenishmentAlert, Severity

STOCKOUT_RISK_COLUMNS = ["product_id", "store_id", "risk_level", "days_until_stockout",
                         "available_quantity", "forecasted_daily_usage"]
HIGH_DEMAND_COLUMNS = ["product_id", "store_id", "period", "expected_demand_increase"]


def classify_stockout_risk(days_until_stockout, rules=None):
    """
    Risk level for a days-of-cover figure.

    Returns:
        'HIGH', 'MEDIUM' or 'LOW'
    """
    thresholds = (rules or ALERT_RULES)["stockout_risk"]
    if days_until_stockout <= thresholds["high_days"]:
        return Priority.HIGH.value
    if days_until_stockout <= thresholds["medium_days"]:
        return Priority.MEDIUM.value
    return Priority.LOW.value


def get_current_seasonal_period(as_of):
    """Name of the configured seasonal event active on a date, else the season."""
    events = get_active_seasonal_events(as_of)
    if events:
        return events[0]["name"]

    month = as_of.month
    if 3 <= month <= 5:
        return "Spring"
    if 6 <= month <= 8:
        return "Summer"
    if 9 <= month <= 11:
        return "Fall"
    return "Winter"


def build_seasonal_insights(store_id, forecasts, inventory_df, as_of=None, rules=None):
    """
    Identify high demand periods and stockout risks for a store.

    Args:
        store_id: Store being analyzed
        forecasts: generate_forecast() results for the store's products
        inventory_df: Inventory snapshot
        as_of: date used to name the seasonal period (defaults to today)
        rules: Alert rules (defaults to ALERT_RULES)

    Returns:
        tuple: (logs, high_demand_df, stockout_risk_df)
        - stockout_risk_df only lists HIGH and MEDIUM risks, most urgent first
    """
    rules = rules or ALERT_RULES
    logs = []
    as_of = pd.Timestamp(as_of) if as_of is not None else pd.Timestamp.now()
    period = get_current_seasonal_period(as_of)
    inventory = build_inventory_lookup(inventory_df, store_id)

    high_demand = []
    risks = []
    for forecast in forecasts:
        product_id = forecast["product_id"]

        increase = max(1.0, forecast["seasonality_factor"])
        if increase > rules["high_demand_seasonality"]:
            high_demand.append({
                "product_id": product_id,
                "store_id": store_id,
                "period": period,
                "expected_demand_increase": increase,
            })

        record = inventory.get(product_id)
        daily = forecast["forecasted_daily_usage"]
        if record is None or daily <= 0:
            continue

        available = float(record.get("on_hand_quantity", 0) or 0) - float(record.get("reserved_quantity", 0) or 0)
        days = max(0.0, available) / daily
        level = classify_stockout_risk(days, rules)
        if level != Priority.LOW.value:
            risks.append({
                "product_id": product_id,
                "store_id": store_id,
                "risk_level": level,
                "days_until_stockout": round(days),
                "available_quantity": available,
                "forecasted_daily_usage": daily,
            })

    high_demand_df = pd.DataFrame(high_demand, columns=HIGH_DEMAND_COLUMNS)
    stockout_risk_df = pd.DataFrame(risks, columns=STOCKOUT_RISK_COLUMNS)
    if not stockout_risk_df.empty:
        stockout_risk_df = stockout_risk_df.sort_values(
            ["days_until_stockout", "product_id"], kind="mergesort"
        ).reset_index(drop=True)

    if high_demand or risks:
        logs.append(f"INFO: Store {store_id}: {len(high_demand)} high demand products ({period}), "
                    f"{len(risks)} stockout risks")
    return logs, high_demand_df, stockout_risk_df


def generate_replenishment_alerts(suggestions_df, store_id, as_of=None, rules=None):
    """
    Raise alerts for critical replenishment situations.

    HIGH priority suggestions raise a STOCKOUT_RISK alert; suggestions whose
    cost exceeds the high cost threshold raise a COST_VARIANCE alert.

    Returns:
        list of ReplenishmentAlert
    """
    rules = rules or ALERT_RULES
    created_at = pd.Timestamp(as_of) if as_of is not None else pd.Timestamp.now()
    alerts = []
    if suggestions_df is None or suggestions_df.empty:
        return alerts

    for row in suggestions_df.to_dict("records"):
        product_id = row["product_id"]
        if row["priority"] == Priority.HIGH.value:
            alerts.append(ReplenishmentAlert(
                alert_id=f"alert_{store_id}_{product_id}_stockout",
                alert_type="STOCKOUT_RISK",
                store_id=store_id,
                product_id=product_id,
                severity=Severity.HIGH,
                message=(f"Product {product_id} is critically low "
                         f"({row['current_quantity']:.0f} units, ROP: {row['reorder_point']})"),
                created_at=created_at,
            ))

        if row["calculated_cost"] > rules["high_cost_threshold"]:
            alerts.append(ReplenishmentAlert(
                alert_id=f"alert_{store_id}_{product_id}_cost",
                alert_type="COST_VARIANCE",
                store_id=store_id,
                product_id=product_id,
                vendor_id=row["suggested_vendor_id"],
                severity=Severity.MEDIUM,
                message=(f"High-cost replenishment order: ${row['calculated_cost']:.2f} "
                         f"for {row['target_quantity']} units"),
                created_at=created_at,
            ))
    return alerts


def get_stockout_summary_metrics(stockout_risk_df):
    """
    Calculate summary metrics for stockout risk analysis

    Args:
        stockout_risk_df: Stockout risk dataframe from build_seasonal_insights()

    Returns:
        dict: Summary metrics
    """
    if stockout_risk_df.empty:
        return {}

    high_count = int((stockout_risk_df["risk_level"] == Priority.HIGH.value).sum())
    medium_count = int((stockout_risk_df["risk_level"] == Priority.MEDIUM.value).sum())
    out_of_stock_count = int((stockout_risk_df["available_quantity"] <= 0).sum())

    return {
        "total_at_risk": len(stockout_risk_df),
        "high_count": high_count,
        "medium_count": medium_count,
        "out_of_stock_count": out_of_stock_count,
        "avg_days_until_stockout": float(np.mean(stockout_risk_df["days_until_stockout"])),
    }
