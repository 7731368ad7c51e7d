"""
Tests for vendor selection
"""

import itertools

import pytest
import numpy as np

from conftest import make_product, make_vendor
from models import VendorPerformance
from vendor_selection import (
    VendorSelectionCriteria,
    generate_selection_reasoning,
    get_vendor_performance_summary,
    score_vendors,
    select_optimal_vendor,
    select_optimal_vendor_mix,
    select_vendor_simple,
    validate_vendor_selection,
)


def random_offers(rng, count):
    return [
        make_vendor(f"V{i}", float(rng.choice([5.0, 8.0, 10.0])), int(rng.choice([1, 3, 5])),
                    preferred=bool(rng.integers(0, 2)))
        for i in range(count)
    ]


class TestSimpleSelection:
    """Test cost -> lead time -> preference ordering"""

    def test_cost_wins_first(self):
        vendors = [make_vendor("A", 10, 1), make_vendor("B", 8, 3, preferred=True)]
        assert select_vendor_simple(vendors).vendor_id == "B"
        assert select_optimal_vendor(vendors).vendor.vendor_id == "B"

    def test_lead_time_breaks_cost_tie(self):
        vendors = [make_vendor("A", 8, 5, preferred=True), make_vendor("B", 8, 2)]
        assert select_vendor_simple(vendors).vendor_id == "B"

    def test_preference_breaks_cost_and_lead_tie(self):
        vendors = [make_vendor("A", 8, 2), make_vendor("B", 8, 2, preferred=True)]
        assert select_vendor_simple(vendors).vendor_id == "B"

    def test_no_vendors(self):
        assert select_vendor_simple([]) is None
        assert select_optimal_vendor([]) is None
        assert score_vendors([]) == []

    def test_identical_offers_stable_under_reordering(self):
        vendors = [make_vendor(vid, 5.0, 2) for vid in ["C", "A", "B"]]
        winners = set()
        for ordering in itertools.permutations(vendors):
            winners.add(select_vendor_simple(list(ordering)).vendor_id)
            winners.add(select_optimal_vendor(list(ordering)).vendor.vendor_id)
        assert winners == {"A"}


class TestScoredSelection:
    """Test the weighted scorer"""

    def test_default_scoring_matches_simple_path_without_sla(self):
        rng = np.random.default_rng(42)
        for _ in range(200):
            vendors = random_offers(rng, int(rng.integers(1, 6)))
            assert select_optimal_vendor(vendors).vendor.vendor_id == select_vendor_simple(vendors).vendor_id

    def test_sla_weight_can_outrank_cost(self):
        vendors = [make_vendor("A", 10, 3), make_vendor("B", 11, 3)]
        performance = [VendorPerformance("A", 0.5), VendorPerformance("B", 1.0)]
        criteria = VendorSelectionCriteria(cost_weight=0.1, lead_time_weight=0.1, sla_weight=0.8)

        ranked = score_vendors(vendors, performance, criteria)
        assert [s.vendor.vendor_id for s in ranked] == ["B", "A"]
        assert ranked[0].total_score == pytest.approx(0.1 + 0.8)

    def test_component_scores(self):
        vendors = [make_vendor("A", 10, 1), make_vendor("B", 20, 5, preferred=True)]
        scores = {s.vendor.vendor_id: s for s in score_vendors(vendors)}

        assert scores["A"].cost_score == 1.0
        assert scores["B"].cost_score == 0.0
        assert scores["A"].lead_time_score == 1.0
        assert scores["B"].preference_score == 1.0
        assert scores["A"].sla_score == 0.5
        assert scores["A"].total_score == pytest.approx(0.5 + 0.3 + 0.1)

    def test_offer_sla_used_without_performance_record(self):
        vendors = [make_vendor("A", 10, 3, sla=0.6), make_vendor("B", 10, 3, sla=0.99)]
        assert select_optimal_vendor(vendors).vendor.vendor_id == "B"

    def test_max_lead_time_constraint(self):
        vendors = [make_vendor("A", 5, 10), make_vendor("B", 9, 2)]
        best = select_optimal_vendor(vendors, criteria=VendorSelectionCriteria(max_lead_time_days=5))
        assert best.vendor.vendor_id == "B"

    def test_constraints_fall_back_to_all_offers(self):
        vendors = [make_vendor("A", 5, 10), make_vendor("B", 9, 12)]
        best = select_optimal_vendor(vendors, criteria=VendorSelectionCriteria(max_lead_time_days=1))
        assert best.vendor.vendor_id == "A"

    def test_minimum_sla_rejects_vendors_without_evidence(self):
        vendors = [make_vendor("A", 5, 2), make_vendor("B", 9, 2)]
        performance = {"B": VendorPerformance("B", 0.95)}
        best = select_optimal_vendor(vendors, performance, VendorSelectionCriteria(min_sla_compliance=0.9))
        assert best.vendor.vendor_id == "B"

    def test_require_preferred(self):
        vendors = [make_vendor("A", 5, 2), make_vendor("B", 9, 2, preferred=True)]
        best = select_optimal_vendor(vendors, criteria=VendorSelectionCriteria(require_preferred=True))
        assert best.vendor.vendor_id == "B"


class TestReasoning:
    """Test selection reasoning text"""

    def test_full_reasoning(self):
        vendor = make_vendor("A", 5, 2, preferred=True)
        text = generate_selection_reasoning(vendor, 1.0, 0.75, 1.0, 0.95)
        assert text == ("Selected for: lowest cost ($5.00), good delivery time (2 days), "
                        "preferred vendor status, excellent SLA performance (95.0%)")

    def test_default_reasoning(self):
        vendor = make_vendor("A", 5, 2)
        assert generate_selection_reasoning(vendor, 0.1, 0.1, 0.0, None) == "Selected as best available option"


class TestVendorMix:
    """Test multi-product vendor selection"""

    def test_mix(self):
        products = [
            make_product("P1", [make_vendor("A", 4, 2), make_vendor("B", 3, 2)]),
            make_product("P2", []),
        ]
        selections = select_optimal_vendor_mix(products, [10, 5])

        assert len(selections) == 1
        assert selections[0]["vendor"].vendor_id == "B"
        assert selections[0]["cost"] == pytest.approx(30.0)

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            select_optimal_vendor_mix([make_product("P1")], [1, 2])


class TestValidation:
    """Test vendor validation and performance summaries"""

    def test_vendor_not_approved(self):
        product = make_product("P1", [make_vendor("A", 4, 2)])
        result = validate_vendor_selection(make_vendor("Z", 1, 1), product)

        assert not result["is_valid"]
        assert result["errors"] == ["Vendor is not in product's approved vendor list"]
        assert "No performance metrics available for this vendor" in result["warnings"]

    def test_performance_warnings(self):
        vendor = make_vendor("A", 4, 20)
        product = make_product("P1", [vendor])
        performance = [VendorPerformance("A", 0.7, quality_score=0.5, invoice_accuracy_rate=0.9)]
        result = validate_vendor_selection(vendor, product, performance)

        assert result["is_valid"]
        assert len(result["warnings"]) == 4

    def test_summary_ratings(self):
        performance = [
            VendorPerformance("A", 0.95, quality_score=0.95, invoice_accuracy_rate=0.99),
            VendorPerformance("B", 0.7, quality_score=0.7, invoice_accuracy_rate=0.9),
        ]
        good = get_vendor_performance_summary("A", performance)
        poor = get_vendor_performance_summary("B", performance)

        assert good["overall_rating"] == "EXCELLENT"
        assert good["recommendations"] == ["Maintain current performance standards"]
        assert poor["overall_rating"] == "FAIR"
        assert len(poor["recommendations"]) == 3

    def test_summary_without_metrics(self):
        summary = get_vendor_performance_summary("X")
        assert summary["overall_rating"] == "FAIR"
        assert summary["metrics"] is None
