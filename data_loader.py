import json
import time
from datetime import datetime, timedelta

import numpy as np
import pandas as pd

from models import EquivalentUnit, NeedGroup, Product, Store, StoreTier, Vendor

# === Column Contracts ===

USAGE_COLUMNS = [
    "product_id",
    "store_id",
    "usage_date",
    "quantity_used",
    "is_seasonal",
    "event_type",
]

INVENTORY_COLUMNS = [
    "product_id",
    "store_id",
    "on_hand_quantity",
    "reserved_quantity",
    "in_transit_quantity",
    "last_updated",
]

# === Helper Functions ===

def clean_string_column(series: pd.Series) -> pd.Series:
    """
    Clean id columns by stripping whitespace and normalizing spaces.

    Args:
        series: Pandas Series with string data

    Returns:
        Cleaned Series with normalized whitespace
    """
    return series.astype(str).str.strip().str.replace(r'\s+', ' ', regex=True)


def safe_numeric_column(series: pd.Series, remove_commas: bool = False) -> pd.Series:
    """
    Convert column to numeric with optional comma removal.

    Args:
        series: Pandas Series to convert
        remove_commas: If True, remove commas before conversion

    Returns:
        Numeric Series with NaN filled as 0
    """
    if remove_commas:
        series = series.astype(str).str.replace(',', '', regex=False)
    return pd.to_numeric(series, errors='coerce').fillna(0)


def check_columns(df, required_cols, filename, logs):
    """Helper function to check for missing columns."""
    missing_cols = [col for col in required_cols if col not in df.columns]
    if missing_cols:
        logs.append(f"ERROR: '{filename}' is missing required columns: {', '.join(missing_cols)}")
        return False
    return True


def empty_usage_history() -> pd.DataFrame:
    return pd.DataFrame({
        "product_id": pd.Series(dtype=str),
        "store_id": pd.Series(dtype=str),
        "usage_date": pd.Series(dtype="datetime64[ns]"),
        "quantity_used": pd.Series(dtype=float),
        "is_seasonal": pd.Series(dtype=bool),
        "event_type": pd.Series(dtype=object),
    })


def empty_inventory() -> pd.DataFrame:
    return pd.DataFrame({
        "product_id": pd.Series(dtype=str),
        "store_id": pd.Series(dtype=str),
        "on_hand_quantity": pd.Series(dtype=float),
        "reserved_quantity": pd.Series(dtype=float),
        "in_transit_quantity": pd.Series(dtype=float),
        "last_updated": pd.Series(dtype="datetime64[ns]"),
    })


# === Normalizers ===

def normalize_usage_history(data) -> pd.DataFrame:
    """
    Normalize usage observations into the standard usage-history frame.

    Accepts a DataFrame or a list of dicts. Missing optional columns are
    filled (is_seasonal=False, event_type=None), dates are parsed, rows with
    unparseable dates are dropped and the result is sorted chronologically
    per (product, store). The input is never modified.

    Args:
        data: DataFrame or iterable of records

    Returns:
        DataFrame with USAGE_COLUMNS
    """
    df = pd.DataFrame(data).copy() if not isinstance(data, pd.DataFrame) else data.copy()
    if df.empty:
        return empty_usage_history()

    df["product_id"] = clean_string_column(df["product_id"])
    df["store_id"] = clean_string_column(df["store_id"])
    df["usage_date"] = pd.to_datetime(df["usage_date"], errors="coerce")
    df["quantity_used"] = safe_numeric_column(df["quantity_used"]).astype(float)

    if "is_seasonal" not in df.columns:
        df["is_seasonal"] = False
    df["is_seasonal"] = df["is_seasonal"].fillna(False).astype(bool)

    if "event_type" not in df.columns:
        df["event_type"] = None
    # Blank tags are untagged observations
    df["event_type"] = df["event_type"].astype(object)
    df["event_type"] = df["event_type"].where(
        df["event_type"].notna() & (df["event_type"].astype(str).str.strip() != ""), None
    )

    df = df[df["usage_date"].notna()]
    df = df.sort_values(["product_id", "store_id", "usage_date"], kind="mergesort")
    return df[USAGE_COLUMNS].reset_index(drop=True)


def normalize_inventory(data) -> pd.DataFrame:
    """
    Normalize inventory records into the standard inventory snapshot frame.

    Args:
        data: DataFrame or iterable of records

    Returns:
        DataFrame with INVENTORY_COLUMNS, one row per (product, store)
    """
    df = pd.DataFrame(data).copy() if not isinstance(data, pd.DataFrame) else data.copy()
    if df.empty:
        return empty_inventory()

    df["product_id"] = clean_string_column(df["product_id"])
    df["store_id"] = clean_string_column(df["store_id"])
    for col in ["on_hand_quantity", "reserved_quantity", "in_transit_quantity"]:
        if col not in df.columns:
            df[col] = 0
        df[col] = safe_numeric_column(df[col]).astype(float)
    if "last_updated" not in df.columns:
        df["last_updated"] = pd.NaT
    df["last_updated"] = pd.to_datetime(df["last_updated"], errors="coerce")

    # One live record per (product, store): keep the most recent
    df = df.sort_values("last_updated", kind="mergesort", na_position="first")
    df = df.drop_duplicates(subset=["product_id", "store_id"], keep="last")
    return df[INVENTORY_COLUMNS].reset_index(drop=True)


# === File Loaders ===

def load_usage_history(usage_path):
    """
    Load usage history from a CSV file.

    Args:
        usage_path: file path to the usage CSV

    Returns:
        tuple: (logs, usage_df)
    """
    logs = []
    start_time = time.time()
    logs.append("--- Usage History Loader ---")

    try:
        df = pd.read_csv(usage_path, low_memory=False)
        logs.append(f"INFO: Loaded {len(df)} rows from {usage_path}.")
    except Exception as e:
        logs.append(f"ERROR: Failed to read '{usage_path}': {e}")
        return logs, empty_usage_history()

    if not check_columns(df, ["product_id", "store_id", "usage_date", "quantity_used"], usage_path, logs):
        return logs, empty_usage_history()

    raw_count = len(df)
    df = normalize_usage_history(df)
    dropped = raw_count - len(df)
    if dropped:
        logs.append(f"WARNING: Dropped {dropped} usage rows with unparseable dates.")

    logs.append(f"INFO: Usage History Loader finished in {time.time() - start_time:.2f} seconds.")
    return logs, df


def load_inventory_levels(inventory_path):
    """
    Load an inventory snapshot from a CSV file.

    Args:
        inventory_path: file path to the inventory CSV

    Returns:
        tuple: (logs, inventory_df)
    """
    logs = []
    start_time = time.time()
    logs.append("--- Inventory Snapshot Loader ---")

    try:
        df = pd.read_csv(inventory_path, low_memory=False)
        logs.append(f"INFO: Loaded {len(df)} rows from {inventory_path}.")
    except Exception as e:
        logs.append(f"ERROR: Failed to read '{inventory_path}': {e}")
        return logs, empty_inventory()

    if not check_columns(df, ["product_id", "store_id", "on_hand_quantity"], inventory_path, logs):
        return logs, empty_inventory()

    df = normalize_inventory(df)
    logs.append(f"INFO: Inventory Snapshot Loader finished in {time.time() - start_time:.2f} seconds.")
    return logs, df


def _vendor_from_dict(raw: dict) -> Vendor:
    return Vendor(
        vendor_id=str(raw["vendor_id"]),
        vendor_name=raw.get("vendor_name", str(raw["vendor_id"])),
        cost_per_item=float(raw["cost_per_item"]),
        lead_time_days=int(raw["lead_time_days"]),
        is_preferred=bool(raw.get("is_preferred", False)),
        vendor_sku=raw.get("vendor_sku"),
        sla_compliance_rate=raw.get("sla_compliance_rate"),
    )


def load_catalog(catalog_path):
    """
    Load stores, products and need groups from a JSON catalog export.

    Expected top-level keys: "stores", "products", "need_groups" (each optional).

    Returns:
        tuple: (logs, stores, products, need_groups)
    """
    logs = []
    logs.append("--- Catalog Loader ---")
    try:
        with open(catalog_path, "r") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logs.append(f"ERROR: Failed to read '{catalog_path}': {e}")
        return logs, [], [], []

    stores = [
        Store(
            store_id=str(s["store_id"]),
            name=s.get("name", str(s["store_id"])),
            district=s.get("district"),
            address=s.get("address"),
            tier=StoreTier(str(s.get("tier", "STANDARD")).upper()),
            is_active=bool(s.get("is_active", True)),
        )
        for s in raw.get("stores", [])
    ]

    products = []
    for p in raw.get("products", []):
        unit = p.get("equivalent_unit")
        products.append(Product(
            product_id=str(p["product_id"]),
            name=p.get("name", str(p["product_id"])),
            vendors=[_vendor_from_dict(v) for v in p.get("vendors", [])],
            is_active=bool(p.get("is_active", True)),
            category=p.get("category"),
            tags=list(p.get("tags", [])),
            need_group=p.get("need_group"),
            equivalent_unit=EquivalentUnit(float(unit["value"]), unit["unit"]) if unit else None,
            supply_duration_days=p.get("supply_duration_days"),
        ))

    need_groups = [
        NeedGroup(
            need_group_id=str(g["need_group_id"]),
            name=g.get("name", str(g["need_group_id"])),
            equivalent_unit=g.get("equivalent_unit", ""),
            store_minimums={str(k): float(v) for k, v in g.get("store_minimums", {}).items()},
            substitution_preferences=[str(x) for x in g.get("substitution_preferences", [])],
        )
        for g in raw.get("need_groups", [])
    ]

    logs.append(f"INFO: Loaded {len(stores)} stores, {len(products)} products, "
                f"{len(need_groups)} need groups.")
    return logs, stores, products, need_groups


# === Snapshot Helpers ===

def filter_usage_window(usage_df: pd.DataFrame, as_of, lookback_days: int) -> pd.DataFrame:
    """
    Restrict usage history to the (as_of - lookback_days, as_of] window.

    Args:
        usage_df: normalized usage history
        as_of: datetime/date anchor (inclusive)
        lookback_days: window length in days

    Returns:
        Filtered copy
    """
    if usage_df.empty:
        return usage_df.copy()
    end = pd.Timestamp(as_of).normalize()
    start = end - timedelta(days=int(lookback_days))
    mask = (usage_df["usage_date"] > start) & (usage_df["usage_date"] <= end)
    return usage_df[mask].copy()


def get_product_usage(usage_df: pd.DataFrame, product_id: str, store_id: str) -> pd.DataFrame:
    """Chronologically ordered usage observations for one (product, store) pair."""
    if usage_df.empty:
        return usage_df
    mask = (usage_df["product_id"] == product_id) & (usage_df["store_id"] == store_id)
    return usage_df[mask].sort_values("usage_date", kind="mergesort")


def build_inventory_lookup(inventory_df: pd.DataFrame, store_id: str) -> dict:
    """
    Map product_id -> inventory record (dict) for one store.

    Returns:
        dict keyed by product_id
    """
    if inventory_df.empty:
        return {}
    store_inv = inventory_df[inventory_df["store_id"] == store_id]
    return {rec["product_id"]: rec for rec in store_inv.to_dict("records")}


def generate_sample_usage(product_ids, store_ids, days=90, as_of=None, base_usage=5.0, seed=42):
    """
    Generate a synthetic usage history with a weekly pattern.

    Useful for demos and smoke tests of the engine.

    Returns:
        Normalized usage DataFrame
    """
    rng = np.random.default_rng(seed)
    end = pd.Timestamp(as_of or datetime.now().date()).normalize()
    dates = pd.date_range(end=end, periods=days, freq="D")
    weekly = np.array([0.9, 0.9, 1.0, 1.0, 1.2, 1.3, 1.1])
    records = []
    for store_id in store_ids:
        for product_id in product_ids:
            noise = rng.normal(0, base_usage * 0.1, size=len(dates))
            qty = np.maximum(0, base_usage * weekly[dates.dayofweek] + noise)
            for d, q in zip(dates, qty):
                records.append({
                    "product_id": product_id,
                    "store_id": store_id,
                    "usage_date": d,
                    "quantity_used": round(float(q), 2),
                    "is_seasonal": False,
                    "event_type": None,
                })
    return normalize_usage_history(records)
