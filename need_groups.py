"""
Need-Group Fulfillment Module

Replenishes a functional need (e.g. "glass cleaner") across the
interchangeable products of a need group, comparing products by cost per
equivalent unit (fl oz, sheets, ...).

Key Features:
- Cost per equivalent unit ranking with substitution preference tie-break
- Store minimums met first with sprayer / minimum-required products
- Remaining equivalent-unit need filled greedily from the cheapest products
"""

import math

from business_rules import get_replenishment_rules
from data_loader import build_inventory_lookup, get_product_usage
from demand_forecasting import generate_forecast
from models import LineItem
from replenishment_planning import get_product_days_of_cover
from vendor_selection import select_vendor_simple

MINIMUM_TAGS = ("sprayer", "minimum-required")


def rank_need_group_products(need_group, products):
    """
    Candidate products of a need group, cheapest per equivalent unit first.

    Only active products tagged into the group with an equivalent unit and at
    least one vendor qualify. Ties break on the group's substitution
    preference order, then product id.

    Returns:
        list of dicts: product, vendor, cost_per_unit
    """
    preferences = {pid: i for i, pid in enumerate(need_group.substitution_preferences)}
    candidates = []
    for product in products:
        if product.need_group != need_group.need_group_id or not product.is_active:
            continue
        if product.equivalent_unit is None or product.equivalent_unit.value <= 0:
            continue
        vendor = select_vendor_simple(product.vendors)
        if vendor is None:
            continue
        candidates.append({
            "product": product,
            "vendor": vendor,
            "cost_per_unit": vendor.cost_per_item / product.equivalent_unit.value,
        })

    candidates.sort(key=lambda c: (
        c["cost_per_unit"],
        preferences.get(c["product"].product_id, len(preferences)),
        c["product"].product_id,
    ))
    return candidates


def _is_minimum_product(product) -> bool:
    return any(tag in product.tags for tag in MINIMUM_TAGS)


def resolve_need_group_fulfillment(store, need_group, products, inventory_df, usage_df, rules=None,
                                   external_factors=None, pattern_cache=None):
    """
    Build the line items that replenish one need group at one store.

    Args:
        store: Store
        need_group: NeedGroup
        products: Product catalog (filtered to the group here)
        inventory_df: Inventory snapshot
        usage_df: Usage history
        rules: Replenishment rules (defaults to get_replenishment_rules())
        external_factors: ExternalFactors or None
        pattern_cache: SeasonalPatternCache or None

    Returns:
        tuple: (logs, line_items, total_cost)
    """
    rules = rules or get_replenishment_rules()
    logs = []
    store_id = store.store_id

    candidates = rank_need_group_products(need_group, products)
    if not candidates:
        logs.append(f"INFO: Need group {need_group.need_group_id}: no eligible products")
        return logs, [], 0.0

    inventory = build_inventory_lookup(inventory_df, store_id)
    quantities = {}

    # ===== STEP 1: STORE MINIMUM =====
    store_minimum = need_group.store_minimums.get(store_id, 0) or 0
    minimum_candidates = [c for c in candidates if _is_minimum_product(c["product"])]
    if store_minimum > 0 and minimum_candidates:
        current = sum(
            float(inventory.get(c["product"].product_id, {}).get("on_hand_quantity", 0) or 0)
            for c in minimum_candidates
        )
        if current < store_minimum:
            best = minimum_candidates[0]
            quantity = int(math.ceil(store_minimum - current))
            quantities[best["product"].product_id] = quantity
            logs.append(f"INFO: Need group {need_group.need_group_id}@{store_id}: "
                        f"{current:.0f} minimum-required units on hand, minimum {store_minimum:.0f}; "
                        f"ordering {quantity} x {best['product'].product_id}")
    elif store_minimum > 0:
        logs.append(f"WARNING: Need group {need_group.need_group_id}@{store_id}: "
                    f"store minimum {store_minimum:.0f} set but no sprayer/minimum-required product")

    # ===== STEP 2: REMAINING EQUIVALENT-UNIT NEED =====
    daily_units = 0.0
    covered_units = 0.0
    days_of_cover = 0
    for c in candidates:
        product = c["product"]
        unit_value = product.equivalent_unit.value
        usage = get_product_usage(usage_df, product.product_id, store_id)
        if not usage.empty:
            forecast = generate_forecast(product.product_id, store_id, usage, external_factors, pattern_cache)
            daily_units += forecast["forecasted_daily_usage"] * unit_value
        days_of_cover = max(days_of_cover, get_product_days_of_cover(product, store, rules))

        record = inventory.get(product.product_id)
        if record is not None:
            available = float(record.get("on_hand_quantity", 0) or 0) - float(record.get("reserved_quantity", 0) or 0)
            in_transit = float(record.get("in_transit_quantity", 0) or 0)
            covered_units += (available + in_transit) * unit_value
        covered_units += quantities.get(product.product_id, 0) * unit_value

    remaining = daily_units * days_of_cover - covered_units
    if remaining > 0:
        cheapest = candidates[0]
        quantity = int(math.ceil(remaining / cheapest["product"].equivalent_unit.value))
        pid = cheapest["product"].product_id
        quantities[pid] = quantities.get(pid, 0) + quantity
        logs.append(f"INFO: Need group {need_group.need_group_id}@{store_id}: "
                    f"{remaining:,.1f} {need_group.equivalent_unit} short over {days_of_cover} days; "
                    f"ordering {quantity} x {pid}")

    # ===== STEP 3: LINE ITEMS =====
    line_items = []
    for c in candidates:
        pid = c["product"].product_id
        if quantities.get(pid, 0) > 0:
            line_items.append(LineItem(
                product_id=pid,
                vendor_id=c["vendor"].vendor_id,
                quantity=quantities[pid],
                unit_cost=c["vendor"].cost_per_item,
            ))

    total_cost = float(sum(item.line_total for item in line_items))
    return logs, line_items, total_cost
