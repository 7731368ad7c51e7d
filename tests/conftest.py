"""
Pytest configuration and shared fixtures for all tests
Centralized catalog, snapshot and usage data plus assertion helpers
"""

import pytest
import pandas as pd
import os
import sys
from datetime import datetime

import pytz

# Add project root to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from collaborators import InMemoryReplenishmentSources
from data_loader import normalize_inventory, normalize_usage_history
from models import Product, Store, StoreTier, Vendor

AS_OF = pd.Timestamp("2024-06-30")
TIMEZONE = pytz.timezone("America/New_York")


# ===== BUILDERS =====

def make_vendor(vendor_id, cost, lead_time, preferred=False, sla=None):
    return Vendor(
        vendor_id=vendor_id,
        vendor_name=f"Vendor {vendor_id}",
        cost_per_item=cost,
        lead_time_days=lead_time,
        is_preferred=preferred,
        sla_compliance_rate=sla,
    )


def make_product(product_id, vendors=None, **kwargs):
    if vendors is None:
        vendors = [make_vendor("V1", 2.5, 2)]
    return Product(product_id=product_id, name=f"Product {product_id}", vendors=vendors, **kwargs)


def constant_usage(product_id, store_id, quantity, days=14, end=AS_OF):
    """Daily usage records with the same quantity every day, ending on `end`."""
    dates = pd.date_range(end=end, periods=days, freq="D")
    return [
        {"product_id": product_id, "store_id": store_id, "usage_date": d, "quantity_used": quantity}
        for d in dates
    ]


def inventory_record(product_id, store_id, on_hand, reserved=0, in_transit=0):
    return {
        "product_id": product_id,
        "store_id": store_id,
        "on_hand_quantity": on_hand,
        "reserved_quantity": reserved,
        "in_transit_quantity": in_transit,
        "last_updated": AS_OF,
    }


def fixed_clock(moment=None):
    """Clock callable returning a fixed aware datetime."""
    moment = moment or TIMEZONE.localize(datetime(2024, 6, 30, 2, 0))
    return lambda: moment


# ===== SHARED FIXTURES =====

@pytest.fixture
def as_of():
    return AS_OF


@pytest.fixture
def stores():
    """Three active stores of different tiers and one inactive store"""
    return [
        Store("S1", "Store 1", tier=StoreTier.BASIC),
        Store("S2", "Store 2", tier=StoreTier.STANDARD),
        Store("S3", "Store 3", tier=StoreTier.PREMIUM),
        Store("S9", "Closed Store", is_active=False),
    ]


@pytest.fixture
def products():
    """
    Two products:
    - P1: two vendors, V1 cheaper
    - P2: single vendor
    """
    return [
        make_product("P1", [make_vendor("V1", 2.5, 2), make_vendor("V2", 3.0, 1, preferred=True)],
                     supply_duration_days=30),
        make_product("P2", [make_vendor("V3", 4.0, 3)], supply_duration_days=30),
    ]


@pytest.fixture
def usage_df():
    """14 days of constant usage (10/day for P1, 4/day for P2) at every active store"""
    records = []
    for store_id in ["S1", "S2", "S3"]:
        records += constant_usage("P1", store_id, 10)
        records += constant_usage("P2", store_id, 4)
    return normalize_usage_history(records)


@pytest.fixture
def inventory_df():
    """P1 below its reorder point everywhere, P2 well stocked"""
    records = []
    for store_id in ["S1", "S2", "S3"]:
        records.append(inventory_record("P1", store_id, 20))
        records.append(inventory_record("P2", store_id, 500))
    return normalize_inventory(records)


@pytest.fixture
def sources(stores, products, inventory_df, usage_df):
    return InMemoryReplenishmentSources(
        stores=stores,
        products=products,
        inventory=inventory_df,
        usage=usage_df,
        as_of=AS_OF,
    )


# ===== UTILITY FUNCTIONS FOR TESTS =====

def assert_log_contains(logs, expected_message):
    """
    Helper to assert that a log message contains expected text

    Args:
        logs: List of log messages
        expected_message: Text expected to be in one of the logs
    """
    log_text = " ".join(logs)
    assert expected_message in log_text, f"Expected '{expected_message}' not found in logs: {log_text}"

def assert_columns_exist(df, columns):
    """
    Helper to assert that DataFrame contains required columns

    Args:
        df: Pandas DataFrame
        columns: List of column names that should exist
    """
    missing = set(columns) - set(df.columns)
    assert not missing, f"Missing required columns: {missing}"
