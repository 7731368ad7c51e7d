"""
In-memory implementation of the engine's external collaborators.

The orchestrator reads its catalog, inventory and usage snapshots, context
services (weather, holidays, promotions, store events) and trigger queue
through this interface, and hands generated line items to the order
workflow via create_system_order(). Any object exposing the same methods
can be passed to ReplenishmentOrchestrator instead.
"""

import threading
from datetime import datetime

import pandas as pd

from business_rules import REPLENISHMENT_RULES
from data_loader import (
    empty_inventory,
    empty_usage_history,
    filter_usage_window,
    normalize_inventory,
    normalize_usage_history,
)


class InMemoryReplenishmentSources:
    """
    Catalog, snapshot, context, order and trigger sources held in memory.

    Args:
        stores: list of Store
        products: list of Product
        inventory: inventory records (DataFrame or list of dicts)
        usage: usage observations (DataFrame or list of dicts)
        need_groups: list of NeedGroup
        weather: {store_id: WeatherConditions}
        holidays: list of holiday tags / ISO dates
        promotions: {store_id: [Promotion]}
        events: {store_id: [StoreEvent]}
        vendor_performance: list of VendorPerformance
        triggers: list of ReplenishmentTrigger
        as_of: anchor date for usage lookback windows (defaults to now)
    """

    def __init__(self, stores=None, products=None, inventory=None, usage=None, need_groups=None,
                 weather=None, holidays=None, promotions=None, events=None,
                 vendor_performance=None, triggers=None, as_of=None):
        self.stores = list(stores or [])
        self.products = list(products or [])
        self.need_groups = list(need_groups or [])
        self.inventory = normalize_inventory(inventory) if inventory is not None else empty_inventory()
        self.usage = normalize_usage_history(usage) if usage is not None else empty_usage_history()
        self.weather = dict(weather or {})
        self.holidays = list(holidays or [])
        self.promotions = dict(promotions or {})
        self.events = dict(events or {})
        self.vendor_performance = list(vendor_performance or [])
        self.triggers = list(triggers or [])
        self.as_of = as_of

        self.orders = []
        self.processed_trigger_ids = []
        self._order_lock = threading.Lock()
        self._order_seq = 0

    # ===== CATALOG =====

    def get_active_stores(self):
        return [s for s in self.stores if s.is_active]

    def get_active_products(self):
        return [p for p in self.products if p.is_active]

    def get_need_groups(self):
        return list(self.need_groups)

    # ===== SNAPSHOTS =====

    def get_inventory_snapshot(self, store_id):
        """Inventory records for one store (copy; never mutated by the engine)."""
        return self.inventory[self.inventory["store_id"] == store_id].copy()

    def get_usage_history(self, store_id, lookback_days):
        """Usage observations for one store within the lookback window."""
        store_usage = self.usage[self.usage["store_id"] == store_id]
        as_of = self.as_of or datetime.now()
        return filter_usage_window(store_usage, as_of, lookback_days)

    # ===== CONTEXT SERVICES =====

    def get_weather(self, store_id):
        return self.weather.get(store_id)

    def get_holidays(self):
        return list(self.holidays)

    def get_promotions(self, store_id):
        return list(self.promotions.get(store_id, []))

    def get_store_events(self, store_id):
        return list(self.events.get(store_id, []))

    def get_vendor_performance(self):
        return list(self.vendor_performance)

    # ===== ORDER WORKFLOW =====

    def create_system_order(self, store_id, line_items):
        """
        Record a system-initiated order awaiting facility manager approval.

        Args:
            store_id: Store the order is for
            line_items: list of LineItem

        Returns:
            str: order id
        """
        order_rules = REPLENISHMENT_RULES["order"]
        with self._order_lock:
            self._order_seq += 1
            order_id = f"ord_sys_{store_id}_{self._order_seq:05d}"
            self.orders.append({
                "order_id": order_id,
                "store_id": store_id,
                "order_type": order_rules["order_type"],
                "status": order_rules["initial_status"],
                "line_items": list(line_items),
                "total_cost": float(sum(item.line_total for item in line_items)),
                "created_at": pd.Timestamp.now(),
            })
        return order_id

    # ===== TRIGGERS =====

    def get_pending_triggers(self):
        return [t for t in self.triggers if not t.processed]

    def mark_trigger_processed(self, trigger_id):
        for trigger in self.triggers:
            if trigger.trigger_id == trigger_id:
                trigger.processed = True
        self.processed_trigger_ids.append(trigger_id)
