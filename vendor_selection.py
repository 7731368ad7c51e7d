"""
Vendor Selection Module

Deterministic choice of the supplying vendor for a product.

Key Features:
- Simple path: cost ascending -> lead time ascending -> preferred first
- Weighted path: cost, lead time, preference and SLA scores (0-1 each)
- Hard constraints (max lead time, preferred only, minimum SLA) with
  fallback to the full offer list when nothing qualifies
- Human-readable selection reasoning
- Validation, performance ratings and per-product vendor mix

The weighted path ranks exactly like the simple path when default weights
are used and no candidate has SLA evidence, so both always pick the same
vendor in that case.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from business_rules import VENDOR_SELECTION_RULES
from models import Vendor, VendorPerformance


@dataclass
class VendorSelectionCriteria:
    max_lead_time_days: Optional[int] = None
    require_preferred: bool = False
    min_sla_compliance: Optional[float] = None
    cost_weight: float = VENDOR_SELECTION_RULES["default_weights"]["cost_weight"]
    lead_time_weight: float = VENDOR_SELECTION_RULES["default_weights"]["lead_time_weight"]
    sla_weight: float = VENDOR_SELECTION_RULES["default_weights"]["sla_weight"]

    def uses_default_weights(self) -> bool:
        defaults = VENDOR_SELECTION_RULES["default_weights"]
        return (self.cost_weight == defaults["cost_weight"]
                and self.lead_time_weight == defaults["lead_time_weight"]
                and self.sla_weight == defaults["sla_weight"])


@dataclass
class VendorScore:
    vendor: Vendor
    total_score: float
    cost_score: float
    lead_time_score: float
    preference_score: float
    sla_score: float
    reasoning: str


# ===== HELPERS =====

def _performance_lookup(performance) -> Dict[str, VendorPerformance]:
    if not performance:
        return {}
    if isinstance(performance, dict):
        return dict(performance)
    return {record.vendor_id: record for record in performance}


def _sla_rate(vendor: Vendor, lookup: Dict[str, VendorPerformance]) -> Optional[float]:
    """Historical SLA compliance for a vendor, or None without evidence."""
    record = lookup.get(vendor.vendor_id)
    if record is not None:
        return record.sla_compliance_rate
    return vendor.sla_compliance_rate


def vendor_sort_key(vendor: Vendor):
    """Total order on offers: cost asc, lead time asc, preferred first, vendor id."""
    return (vendor.cost_per_item, vendor.lead_time_days, not vendor.is_preferred, vendor.vendor_id)


def _inverse_normalized(value, values) -> float:
    low, high = min(values), max(values)
    if high == low:
        return 1.0
    return 1.0 - (value - low) / (high - low)


def filter_eligible_vendors(vendors: List[Vendor], lookup: Dict[str, VendorPerformance],
                            criteria: VendorSelectionCriteria) -> List[Vendor]:
    """Apply hard constraints; offers without SLA evidence fail a minimum SLA."""
    eligible = []
    for vendor in vendors:
        if criteria.max_lead_time_days is not None and vendor.lead_time_days > criteria.max_lead_time_days:
            continue
        if criteria.require_preferred and not vendor.is_preferred:
            continue
        if criteria.min_sla_compliance is not None:
            rate = _sla_rate(vendor, lookup)
            if rate is None or rate < criteria.min_sla_compliance:
                continue
        eligible.append(vendor)
    return eligible


def generate_selection_reasoning(vendor: Vendor, cost_score, lead_time_score, preference_score,
                                 sla_rate: Optional[float]) -> str:
    """Explain a selection from its component scores."""
    thresholds = VENDOR_SELECTION_RULES["reasoning_thresholds"]
    reasons = []

    if cost_score >= thresholds["excellent"]:
        reasons.append(f"lowest cost (${vendor.cost_per_item:.2f})")
    elif cost_score >= thresholds["good"]:
        reasons.append(f"competitive cost (${vendor.cost_per_item:.2f})")

    if lead_time_score >= thresholds["excellent"]:
        reasons.append(f"fastest delivery ({vendor.lead_time_days} days)")
    elif lead_time_score >= thresholds["good"]:
        reasons.append(f"good delivery time ({vendor.lead_time_days} days)")

    if preference_score == 1:
        reasons.append("preferred vendor status")

    if sla_rate is not None and sla_rate >= thresholds["excellent"]:
        reasons.append(f"excellent SLA performance ({sla_rate * 100:.1f}%)")
    elif sla_rate is not None and sla_rate >= thresholds["good"]:
        reasons.append(f"good SLA performance ({sla_rate * 100:.1f}%)")

    if reasons:
        return f"Selected for: {', '.join(reasons)}"
    return "Selected as best available option"


# ===== SELECTION =====

def score_vendors(vendors: List[Vendor], performance=None, criteria=None) -> List[VendorScore]:
    """
    Score and rank every candidate offer, best first.

    Args:
        vendors: product's vendor offers
        performance: VendorPerformance records (list or {vendor_id: record})
        criteria: VendorSelectionCriteria or None for defaults

    Returns:
        list of VendorScore in rank order (empty when there are no offers)
    """
    if not vendors:
        return []

    criteria = criteria or VendorSelectionCriteria()
    lookup = _performance_lookup(performance)

    candidates = filter_eligible_vendors(vendors, lookup, criteria)
    if not candidates:
        candidates = list(vendors)

    costs = [v.cost_per_item for v in candidates]
    lead_times = [v.lead_time_days for v in candidates]
    neutral_sla = VENDOR_SELECTION_RULES["neutral_sla_score"]
    preference_weight = VENDOR_SELECTION_RULES["preference_weight"]

    scores = []
    for vendor in candidates:
        cost_score = _inverse_normalized(vendor.cost_per_item, costs)
        lead_time_score = _inverse_normalized(vendor.lead_time_days, lead_times)
        preference_score = 1.0 if vendor.is_preferred else 0.0
        sla_rate = _sla_rate(vendor, lookup)
        sla_score = sla_rate if sla_rate is not None else neutral_sla

        total = (cost_score * criteria.cost_weight
                 + lead_time_score * criteria.lead_time_weight
                 + preference_score * preference_weight
                 + sla_score * criteria.sla_weight)

        scores.append(VendorScore(
            vendor=vendor,
            total_score=total,
            cost_score=cost_score,
            lead_time_score=lead_time_score,
            preference_score=preference_score,
            sla_score=sla_score,
            reasoning=generate_selection_reasoning(vendor, cost_score, lead_time_score,
                                                   preference_score, sla_rate),
        ))

    has_sla_evidence = any(_sla_rate(v, lookup) is not None for v in candidates)
    if not has_sla_evidence and criteria.uses_default_weights():
        scores.sort(key=lambda s: vendor_sort_key(s.vendor))
    else:
        scores.sort(key=lambda s: (-s.total_score,) + vendor_sort_key(s.vendor))
    return scores


def select_optimal_vendor(vendors: List[Vendor], performance=None, criteria=None) -> Optional[VendorScore]:
    """
    Select the best vendor for a product.

    Args:
        vendors: product's vendor offers
        performance: VendorPerformance records (list or {vendor_id: record})
        criteria: VendorSelectionCriteria or None for defaults

    Returns:
        VendorScore for the top-ranked vendor, or None when there are no offers
    """
    ranked = score_vendors(vendors, performance, criteria)
    return ranked[0] if ranked else None


def select_vendor_simple(vendors: List[Vendor]) -> Optional[Vendor]:
    """Cheapest offer, then shortest lead time, then preferred."""
    if not vendors:
        return None
    return min(vendors, key=vendor_sort_key)


def select_optimal_vendor_mix(products, quantities, performance=None) -> List[dict]:
    """
    Pick a vendor for each product of a multi-line order.

    Args:
        products: list of Product
        quantities: list of quantities, same length as products
        performance: VendorPerformance records

    Returns:
        list of dicts: product_id, vendor, quantity, cost

    Raises:
        ValueError: If products and quantities differ in length
    """
    if len(products) != len(quantities):
        raise ValueError("Products and quantities must have the same length")

    selections = []
    for product, quantity in zip(products, quantities):
        best = select_optimal_vendor(product.vendors, performance)
        if best is None:
            continue
        selections.append({
            "product_id": product.product_id,
            "vendor": best.vendor,
            "quantity": quantity,
            "cost": quantity * best.vendor.cost_per_item,
        })
    return selections


# ===== VALIDATION & REPORTING =====

def validate_vendor_selection(vendor: Vendor, product, performance=None) -> dict:
    """
    Check a vendor choice against business rules.

    Returns:
        dict: {'is_valid': bool, 'warnings': [...], 'errors': [...]}
    """
    rules = VENDOR_SELECTION_RULES["validation"]
    warnings = []
    errors = []

    if not any(v.vendor_id == vendor.vendor_id for v in product.vendors):
        errors.append("Vendor is not in product's approved vendor list")

    record = _performance_lookup(performance).get(vendor.vendor_id)
    if record is not None:
        if record.sla_compliance_rate < rules["min_sla_compliance"]:
            warnings.append(f"Vendor has low SLA compliance ({record.sla_compliance_rate * 100:.1f}%)")
        if record.quality_score < rules["min_quality_score"]:
            warnings.append(f"Vendor has low quality score ({record.quality_score * 100:.1f}%)")
        if record.invoice_accuracy_rate < rules["min_invoice_accuracy"]:
            warnings.append(f"Vendor has invoice accuracy issues ({record.invoice_accuracy_rate * 100:.1f}%)")
    else:
        warnings.append("No performance metrics available for this vendor")

    if vendor.lead_time_days > rules["long_lead_time_days"]:
        warnings.append(f"Long lead time ({vendor.lead_time_days} days)")

    return {
        "is_valid": not errors,
        "warnings": warnings,
        "errors": errors,
    }


def get_vendor_performance_summary(vendor_id: str, performance: Iterable[VendorPerformance] = None) -> dict:
    """
    Overall rating and recommendations for a vendor.

    Returns:
        dict: vendor_id, overall_rating (EXCELLENT/GOOD/FAIR/POOR),
              metrics (record or None), recommendations
    """
    record = _performance_lookup(performance).get(vendor_id)
    if record is None:
        return {
            "vendor_id": vendor_id,
            "overall_rating": "FAIR",
            "metrics": None,
            "recommendations": ["Establish performance tracking for this vendor"],
        }

    avg_score = (record.sla_compliance_rate + record.quality_score + record.invoice_accuracy_rate) / 3
    rating = "POOR"
    for label, threshold in VENDOR_SELECTION_RULES["performance_rating"].items():
        if avg_score >= threshold:
            rating = label
            break

    rules = VENDOR_SELECTION_RULES["validation"]
    recommendations = []
    if record.sla_compliance_rate < rules["min_sla_compliance"]:
        recommendations.append("Review delivery performance with vendor")
    if record.quality_score < rules["min_quality_score"]:
        recommendations.append("Address quality issues with vendor")
    if record.invoice_accuracy_rate < rules["min_invoice_accuracy"]:
        recommendations.append("Improve invoice accuracy processes")
    if not recommendations:
        recommendations.append("Maintain current performance standards")

    return {
        "vendor_id": vendor_id,
        "overall_rating": rating,
        "metrics": record,
        "recommendations": recommendations,
    }
