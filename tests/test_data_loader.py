"""
Tests for data loading and normalization
"""

import json

import pandas as pd

from conftest import AS_OF, assert_columns_exist, assert_log_contains, constant_usage, inventory_record
from data_loader import (
    INVENTORY_COLUMNS,
    USAGE_COLUMNS,
    build_inventory_lookup,
    filter_usage_window,
    generate_sample_usage,
    get_product_usage,
    load_catalog,
    load_inventory_levels,
    load_usage_history,
    normalize_inventory,
    normalize_usage_history,
)
from models import StoreTier


class TestNormalizeUsageHistory:
    """Test usage history normalization"""

    def test_sorted_and_typed(self):
        records = [
            {"product_id": " P1 ", "store_id": "S1", "usage_date": "2024-06-02", "quantity_used": "5"},
            {"product_id": "P1", "store_id": "S1", "usage_date": "2024-06-01", "quantity_used": 3},
        ]
        df = normalize_usage_history(records)

        assert list(df.columns) == USAGE_COLUMNS
        assert df["product_id"].tolist() == ["P1", "P1"]
        assert df["quantity_used"].tolist() == [3.0, 5.0]
        assert pd.api.types.is_datetime64_any_dtype(df["usage_date"])
        assert not df["is_seasonal"].any()

    def test_unparseable_dates_dropped(self):
        records = [
            {"product_id": "P1", "store_id": "S1", "usage_date": "not a date", "quantity_used": 5},
            {"product_id": "P1", "store_id": "S1", "usage_date": "2024-06-01", "quantity_used": 3},
        ]
        assert len(normalize_usage_history(records)) == 1

    def test_blank_event_tags_are_untagged(self):
        records = [
            {"product_id": "P1", "store_id": "S1", "usage_date": "2024-06-01", "quantity_used": 3,
             "event_type": "  "},
            {"product_id": "P1", "store_id": "S1", "usage_date": "2024-06-02", "quantity_used": 3,
             "event_type": "holiday"},
        ]
        df = normalize_usage_history(records)
        assert pd.isna(df["event_type"].iloc[0])
        assert df["event_type"].iloc[1] == "holiday"

    def test_input_not_modified(self):
        source = pd.DataFrame(constant_usage("P1", "S1", 2, days=3))
        before = source.copy()
        normalize_usage_history(source)
        pd.testing.assert_frame_equal(source, before)

    def test_empty_input(self):
        df = normalize_usage_history([])
        assert df.empty
        assert list(df.columns) == USAGE_COLUMNS


class TestNormalizeInventory:
    """Test inventory snapshot normalization"""

    def test_keeps_latest_record_per_pair(self):
        old = inventory_record("P1", "S1", 10)
        old["last_updated"] = AS_OF - pd.Timedelta(days=1)
        new = inventory_record("P1", "S1", 25)
        df = normalize_inventory([new, old])

        assert len(df) == 1
        assert df["on_hand_quantity"].iloc[0] == 25

    def test_missing_quantity_columns_default_to_zero(self):
        df = normalize_inventory([{"product_id": "P1", "store_id": "S1", "on_hand_quantity": "1,5"}])
        assert_columns_exist(df, INVENTORY_COLUMNS)
        assert df["reserved_quantity"].iloc[0] == 0
        assert df["in_transit_quantity"].iloc[0] == 0


class TestFileLoaders:
    """Test CSV and JSON loaders"""

    def test_load_usage_history(self, tmp_path):
        path = tmp_path / "usage.csv"
        pd.DataFrame(constant_usage("P1", "S1", 4, days=5)).to_csv(path, index=False)

        logs, df = load_usage_history(str(path))
        assert len(df) == 5
        assert_log_contains(logs, "Loaded 5 rows")

    def test_load_usage_history_missing_columns(self, tmp_path):
        path = tmp_path / "usage.csv"
        pd.DataFrame({"product_id": ["P1"]}).to_csv(path, index=False)

        logs, df = load_usage_history(str(path))
        assert df.empty
        assert_log_contains(logs, "ERROR: ")

    def test_load_usage_history_missing_file(self, tmp_path):
        logs, df = load_usage_history(str(tmp_path / "missing.csv"))
        assert df.empty
        assert_log_contains(logs, "Failed to read")

    def test_load_inventory_levels(self, tmp_path):
        path = tmp_path / "inventory.csv"
        pd.DataFrame([inventory_record("P1", "S1", 12)]).to_csv(path, index=False)

        logs, df = load_inventory_levels(str(path))
        assert df["on_hand_quantity"].iloc[0] == 12
        assert_log_contains(logs, "Inventory Snapshot Loader finished")

    def test_load_catalog(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({
            "stores": [{"store_id": "S1", "tier": "premium"}],
            "products": [{
                "product_id": "P1",
                "tags": ["sprayer"],
                "need_group": "glass",
                "equivalent_unit": {"value": 32, "unit": "fl_oz"},
                "vendors": [{"vendor_id": "V1", "cost_per_item": 2.5, "lead_time_days": 2}],
            }],
            "need_groups": [{"need_group_id": "glass", "store_minimums": {"S1": 2}}],
        }))

        logs, stores, products, need_groups = load_catalog(str(path))
        assert stores[0].tier == StoreTier.PREMIUM
        assert products[0].vendors[0].cost_per_item == 2.5
        assert products[0].equivalent_unit.value == 32.0
        assert need_groups[0].store_minimums == {"S1": 2.0}
        assert_log_contains(logs, "1 stores, 1 products, 1 need groups")

    def test_load_catalog_invalid_json(self, tmp_path):
        path = tmp_path / "catalog.json"
        path.write_text("{not json")

        logs, stores, products, need_groups = load_catalog(str(path))
        assert (stores, products, need_groups) == ([], [], [])
        assert_log_contains(logs, "ERROR: ")


class TestSnapshotHelpers:
    """Test windowing and lookup helpers"""

    def test_filter_usage_window_is_end_inclusive(self):
        df = normalize_usage_history(constant_usage("P1", "S1", 1, days=40))
        window = filter_usage_window(df, AS_OF, 30)

        assert len(window) == 30
        assert window["usage_date"].max() == AS_OF

    def test_get_product_usage(self):
        df = normalize_usage_history(constant_usage("P1", "S1", 1, days=3) + constant_usage("P2", "S1", 1, days=2))
        assert len(get_product_usage(df, "P2", "S1")) == 2
        assert get_product_usage(df, "P2", "S2").empty

    def test_build_inventory_lookup(self, inventory_df):
        lookup = build_inventory_lookup(inventory_df, "S1")
        assert set(lookup) == {"P1", "P2"}
        assert lookup["P1"]["on_hand_quantity"] == 20

    def test_generate_sample_usage_is_deterministic(self):
        first = generate_sample_usage(["P1", "P2"], ["S1"], days=30, as_of=AS_OF)
        second = generate_sample_usage(["P1", "P2"], ["S1"], days=30, as_of=AS_OF)

        assert len(first) == 60
        assert first["usage_date"].max() == AS_OF
        assert (first["quantity_used"] >= 0).all()
        pd.testing.assert_frame_equal(first, second)
