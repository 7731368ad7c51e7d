"""
Replenishment Planning Module
=============================
Turns per-product forecasts and a store's inventory snapshot into
replenishment suggestions, and batches suggestions into system-initiated
orders.

Key Features:
- Safety stock scaled by forecast variability
- Reorder point from vendor lead time, adjusted by seasonality
- Days of cover from product override or store tier
- Vendor choice through the vendor selector (simple path by default)
- HIGH / MEDIUM / LOW priority weighted by forecast confidence
- One system-initiated order per store
- Bounded suggestion validity (expired suggestions are regenerated)
"""

import math
from datetime import timedelta
from typing import List, Optional, Tuple

import pandas as pd

from business_rules import get_confidence_adjustment, get_days_of_cover, get_replenishment_rules
from data_loader import build_inventory_lookup, get_product_usage
from demand_forecasting import generate_forecast
from models import LineItem, Priority
from vendor_selection import score_vendors, select_optimal_vendor, select_vendor_simple

SUGGESTION_COLUMNS = [
    "product_id",
    "store_id",
    "current_quantity",
    "reorder_point",
    "adjusted_reorder_point",
    "safety_stock",
    "target_on_hand",
    "target_quantity",
    "suggested_vendor_id",
    "unit_cost",
    "calculated_cost",
    "priority",
    "forecast_confidence",
    "seasonality_factor",
    "predicted_daily_usage",
    "forecast_method",
    "vendor_reasoning",
    "generated_at",
    "expires_at",
]

PRIORITY_ORDER = {Priority.HIGH.value: 0, Priority.MEDIUM.value: 1, Priority.LOW.value: 2}


def empty_suggestions() -> pd.DataFrame:
    return pd.DataFrame(columns=SUGGESTION_COLUMNS)


# ===== CORE FORMULAS =====

def calculate_safety_stock(avg_daily_usage: float, usage_variability: float, multiplier: float) -> int:
    """
    Calculate safety stock.

    Formula: Safety Stock = ceil(avg daily usage * multiplier * (1 + variability))

    Args:
        avg_daily_usage: Forecast daily usage
        usage_variability: Relative uncertainty of the forecast
        multiplier: Safety stock multiplier from the replenishment rules

    Returns:
        Safety stock in units
    """
    if avg_daily_usage <= 0:
        return 0
    return int(math.ceil(avg_daily_usage * multiplier * (1 + max(0.0, usage_variability))))


def calculate_reorder_point(safety_stock: float, lead_time_days: float, avg_daily_usage: float) -> int:
    """
    Calculate the reorder point (ROP).

    Formula: ROP = ceil(Safety Stock + Lead Time * Daily Usage)

    Returns:
        Reorder point in units
    """
    return int(math.ceil(safety_stock + lead_time_days * avg_daily_usage))


def calculate_target_on_hand(avg_daily_usage: float, days_of_cover: int) -> int:
    """Stock level that covers `days_of_cover` days of forecast usage."""
    return int(math.ceil(avg_daily_usage * days_of_cover))


def calculate_quantity_needed(target_on_hand: float, available: float, in_transit: float) -> int:
    """
    Units to order to reach the target on hand.

    Formula: max(0, Target - Available - In Transit)
    """
    return int(max(0, math.ceil(target_on_hand - available - in_transit)))


def calculate_priority(available: float, safety_stock: float, adjusted_reorder_point: float,
                       confidence: float, rules=None) -> str:
    """
    Classify the urgency of a suggestion.

    HIGH when available stock is at or below the confidence-adjusted safety
    stock, MEDIUM when at or below a fraction of the adjusted reorder point,
    LOW otherwise.
    """
    rules = rules or get_replenishment_rules()
    if available <= safety_stock * get_confidence_adjustment(confidence, rules):
        return Priority.HIGH.value
    if available <= adjusted_reorder_point * rules["priority"]["medium_rop_ratio"]:
        return Priority.MEDIUM.value
    return Priority.LOW.value


def get_product_days_of_cover(product, store, rules=None) -> int:
    """Product supply duration when set, otherwise the store tier default."""
    if product.supply_duration_days:
        return int(product.supply_duration_days)
    tier = getattr(store.tier, "value", store.tier)
    return get_days_of_cover(tier, rules)


def choose_vendor(vendors, vendor_performance=None):
    """
    Pick the supplying vendor and explain the choice.

    Without performance records the simple cost/lead time/preference order
    is used; with them, the weighted scorer.

    Returns:
        tuple: (Vendor or None, reasoning)
    """
    if not vendors:
        return None, ""
    if vendor_performance:
        best = select_optimal_vendor(vendors, vendor_performance)
        return best.vendor, best.reasoning

    vendor = select_vendor_simple(vendors)
    reasoning = next(
        (score.reasoning for score in score_vendors(vendors) if score.vendor.vendor_id == vendor.vendor_id),
        "Selected as best available option",
    )
    return vendor, reasoning


# ===== PER-PRODUCT CALCULATION =====

def calculate_product_suggestion(store, product, inventory_record, usage_history, external_factors=None,
                                 rules=None, vendor_performance=None, excluded_vendor_ids=None,
                                 pattern_cache=None, as_of=None):
    """
    Compute the replenishment suggestion for one product at one store.

    Args:
        store: Store
        product: Product
        inventory_record: dict from the store's inventory snapshot
        usage_history: usage rows for the (product, store) pair
        external_factors: ExternalFactors or None
        rules: Replenishment rules dict
        vendor_performance: VendorPerformance records or None
        excluded_vendor_ids: vendor ids that must not be suggested
        pattern_cache: SeasonalPatternCache or None
        as_of: generation timestamp (defaults to now)

    Returns:
        tuple: (logs, suggestion dict or None, forecast dict or None)
    """
    rules = rules or get_replenishment_rules()
    logs = []
    store_id = store.store_id

    vendors = [v for v in product.vendors if v.vendor_id not in (excluded_vendor_ids or set())]
    if not vendors:
        logs.append(f"INFO: {product.product_id}@{store_id}: no eligible vendor, skipped")
        return logs, None, None

    forecast = generate_forecast(product.product_id, store_id, usage_history, external_factors, pattern_cache)
    logs.extend(forecast["logs"])

    avg = forecast["forecasted_daily_usage"]
    if avg <= 0:
        # No usage evidence is not a reason to order
        return logs, None, forecast

    safety_stock = calculate_safety_stock(avg, forecast["usage_variability"], rules["safety_stock_multiplier"])
    days_of_cover = get_product_days_of_cover(product, store, rules)
    vendor, reasoning = choose_vendor(vendors, vendor_performance)

    reorder_point = calculate_reorder_point(safety_stock, vendor.lead_time_days, avg)
    adjusted_reorder_point = reorder_point * forecast["seasonality_factor"]

    on_hand = float(inventory_record.get("on_hand_quantity", 0) or 0)
    reserved = float(inventory_record.get("reserved_quantity", 0) or 0)
    in_transit = float(inventory_record.get("in_transit_quantity", 0) or 0)
    available = on_hand - reserved

    if available > reorder_point:
        return logs, None, forecast

    target_on_hand = calculate_target_on_hand(avg, days_of_cover)
    quantity_needed = calculate_quantity_needed(target_on_hand, available, in_transit)
    if quantity_needed <= 0:
        return logs, None, forecast

    generated_at = pd.Timestamp(as_of) if as_of is not None else pd.Timestamp.now()
    suggestion = {
        "product_id": product.product_id,
        "store_id": store_id,
        "current_quantity": available,
        "reorder_point": reorder_point,
        "adjusted_reorder_point": adjusted_reorder_point,
        "safety_stock": safety_stock,
        "target_on_hand": target_on_hand,
        "target_quantity": quantity_needed,
        "suggested_vendor_id": vendor.vendor_id,
        "unit_cost": vendor.cost_per_item,
        "calculated_cost": quantity_needed * vendor.cost_per_item,
        "priority": calculate_priority(available, safety_stock, adjusted_reorder_point,
                                       forecast["confidence"], rules),
        "forecast_confidence": forecast["confidence"],
        "seasonality_factor": forecast["seasonality_factor"],
        "predicted_daily_usage": avg,
        "forecast_method": forecast["forecast_method"],
        "vendor_reasoning": reasoning,
        "generated_at": generated_at,
        "expires_at": generated_at + timedelta(days=rules["suggestion_validity_days"]),
    }
    return logs, suggestion, forecast


# ===== STORE-LEVEL PLANNING =====

def plan_store_replenishment(store, products, inventory_df, usage_df, external_factors=None, rules=None,
                             vendor_performance=None, excluded_vendor_ids=None, pattern_cache=None,
                             as_of=None):
    """
    Run the per-product calculation over a store's catalog.

    Returns:
        tuple: (logs, suggestions_df, forecasts) where forecasts lists every
        forecast generated for the store
    """
    rules = rules or get_replenishment_rules()
    logs = []
    logs.append(f"INFO: Starting replenishment calculation for store {store.store_id}...")

    inventory = build_inventory_lookup(inventory_df, store.store_id)
    excluded = set(excluded_vendor_ids or [])

    suggestions = []
    forecasts = []
    skipped_inactive = 0
    skipped_no_inventory = 0

    for product in products:
        if not product.is_active:
            skipped_inactive += 1
            continue
        record = inventory.get(product.product_id)
        if record is None:
            skipped_no_inventory += 1
            continue

        usage = get_product_usage(usage_df, product.product_id, store.store_id)
        product_logs, suggestion, forecast = calculate_product_suggestion(
            store, product, record, usage, external_factors, rules,
            vendor_performance, excluded, pattern_cache, as_of,
        )
        logs.extend(product_logs)
        if forecast is not None:
            forecasts.append(forecast)
        if suggestion is not None:
            suggestions.append(suggestion)

    if skipped_inactive or skipped_no_inventory:
        logs.append(f"INFO: Skipped {skipped_inactive} inactive products and "
                    f"{skipped_no_inventory} products without inventory records")

    if not suggestions:
        logs.append(f"INFO: No replenishment needed for store {store.store_id}")
        return logs, empty_suggestions(), forecasts

    suggestions_df = pd.DataFrame(suggestions, columns=SUGGESTION_COLUMNS)
    suggestions_df["_priority_rank"] = suggestions_df["priority"].map(PRIORITY_ORDER)
    suggestions_df = suggestions_df.sort_values(
        by=["_priority_rank", "calculated_cost", "product_id"],
        ascending=[True, False, True],
        kind="mergesort",
    ).drop(columns="_priority_rank").reset_index(drop=True)

    logs.append(f"INFO: Generated {len(suggestions_df)} suggestions for store {store.store_id} "
                f"({suggestions_df['target_quantity'].sum():,.0f} units, "
                f"${suggestions_df['calculated_cost'].sum():,.2f})")
    return logs, suggestions_df, forecasts


def generate_replenishment_suggestions(store, products, inventory_df, usage_df, external_factors=None,
                                       rules=None, vendor_performance=None, excluded_vendor_ids=None,
                                       pattern_cache=None, as_of=None) -> Tuple[List[str], pd.DataFrame]:
    """
    Generate replenishment suggestions for one store.

    This is the main entry point for replenishment planning.

    Args:
        store: Store being planned
        products: Product catalog (inactive products are skipped)
        inventory_df: Inventory snapshot (INVENTORY_COLUMNS)
        usage_df: Usage history (USAGE_COLUMNS)
        external_factors: ExternalFactors or None
        rules: Replenishment rules (defaults to get_replenishment_rules())
        vendor_performance: VendorPerformance records or None
        excluded_vendor_ids: vendor ids that must not be suggested
        pattern_cache: SeasonalPatternCache or None
        as_of: generation timestamp (defaults to now)

    Returns:
        tuple: (logs, suggestions_df with SUGGESTION_COLUMNS)
    """
    logs, suggestions_df, _ = plan_store_replenishment(
        store, products, inventory_df, usage_df, external_factors, rules,
        vendor_performance, excluded_vendor_ids, pattern_cache, as_of,
    )
    return logs, suggestions_df


# ===== ORDER BATCHING =====

def suggestions_to_line_items(suggestions_df: pd.DataFrame) -> List[LineItem]:
    """Convert suggestion rows into order line items."""
    return [
        LineItem(
            product_id=row["product_id"],
            vendor_id=row["suggested_vendor_id"],
            quantity=int(row["target_quantity"]),
            unit_cost=float(row["unit_cost"]),
        )
        for row in suggestions_df.to_dict("records")
    ]


def create_system_replenishment_orders(suggestions_df: pd.DataFrame, order_workflow):
    """
    Create exactly one system-initiated order per store with suggestions.

    Args:
        suggestions_df: suggestions for one or more stores
        order_workflow: collaborator exposing create_system_order(store_id, line_items)

    Returns:
        tuple: (logs, list of {'store_id', 'order_id', 'line_items', 'total_cost'})
    """
    logs = []
    orders = []
    if suggestions_df is None or suggestions_df.empty:
        return logs, orders

    for store_id, group in suggestions_df.groupby("store_id", sort=True):
        line_items = suggestions_to_line_items(group)
        order_id = order_workflow.create_system_order(store_id, line_items)
        total_cost = float(sum(item.line_total for item in line_items))
        orders.append({
            "store_id": store_id,
            "order_id": order_id,
            "line_items": line_items,
            "total_cost": total_cost,
        })
        logs.append(f"INFO: Created order {order_id} for store {store_id}: "
                    f"{len(line_items)} lines, ${total_cost:,.2f}")
    return logs, orders


# ===== VALIDITY =====

def is_suggestion_expired(suggestion, as_of=None) -> bool:
    """True once a suggestion has reached its expiry time."""
    now = pd.Timestamp(as_of) if as_of is not None else pd.Timestamp.now()
    return now >= pd.Timestamp(suggestion["expires_at"])


def drop_expired_suggestions(suggestions_df: pd.DataFrame, as_of=None) -> pd.DataFrame:
    """Keep only suggestions that are still valid."""
    if suggestions_df.empty:
        return suggestions_df.copy()
    now = pd.Timestamp(as_of) if as_of is not None else pd.Timestamp.now()
    return suggestions_df[pd.to_datetime(suggestions_df["expires_at"]) > now].reset_index(drop=True)


# ===== REPORTING =====

def get_replenishment_summary_by_vendor(suggestions_df: pd.DataFrame) -> pd.DataFrame:
    """
    Summarize suggestions by vendor.

    Args:
        suggestions_df: suggestions DataFrame

    Returns:
        DataFrame with vendor-level summary
    """
    if suggestions_df.empty:
        return pd.DataFrame()

    summary = suggestions_df.groupby("suggested_vendor_id").agg({
        "product_id": "count",
        "target_quantity": "sum",
        "calculated_cost": "sum",
        "forecast_confidence": "mean",
    }).reset_index()

    summary.columns = ["Vendor", "Line Count", "Total Units", "Total Cost", "Avg Forecast Confidence"]
    summary = summary.sort_values("Total Cost", ascending=False)

    return summary


def get_critical_replenishment_items(suggestions_df: pd.DataFrame, top_n: Optional[int] = 20) -> pd.DataFrame:
    """
    Get HIGH priority suggestions, lowest stock cover first.

    Args:
        suggestions_df: suggestions DataFrame
        top_n: Number of items to return

    Returns:
        DataFrame with the most urgent suggestions
    """
    if suggestions_df.empty:
        return pd.DataFrame()

    critical = suggestions_df[suggestions_df["priority"] == Priority.HIGH.value].copy()
    critical["days_of_stock"] = critical["current_quantity"] / critical["predicted_daily_usage"]
    critical = critical.sort_values(by=["days_of_stock", "product_id"], ascending=[True, True])

    return critical.head(top_n)
