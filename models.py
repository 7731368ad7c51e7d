"""
Data model for the replenishment engine.

Reference data (products, vendors, stores, need groups) and the engine's
output/audit records. Usage history and inventory snapshots are carried as
pandas DataFrames; see data_loader.USAGE_COLUMNS / INVENTORY_COLUMNS.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class StoreTier(str, Enum):
    PREMIUM = "PREMIUM"
    STANDARD = "STANDARD"
    BASIC = "BASIC"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class TriggerPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class TriggerType(str, Enum):
    STOCKOUT_ALERT = "STOCKOUT_ALERT"
    WEATHER_EVENT = "WEATHER_EVENT"
    PROMOTION = "PROMOTION"
    VENDOR_DISRUPTION = "VENDOR_DISRUPTION"
    MANUAL = "MANUAL"


class JobType(str, Enum):
    NIGHTLY = "NIGHTLY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    TRIGGER = "TRIGGER"


class JobStatus(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    FAILED = "FAILED"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


@dataclass
class EquivalentUnit:
    value: float
    unit: str  # e.g. "fl_oz", "sheets"


@dataclass
class Vendor:
    vendor_id: str
    vendor_name: str
    cost_per_item: float
    lead_time_days: int
    is_preferred: bool = False
    vendor_sku: Optional[str] = None
    sla_compliance_rate: Optional[float] = None


@dataclass
class VendorPerformance:
    vendor_id: str
    sla_compliance_rate: float
    average_delivery_days: float = 0.0
    quality_score: float = 1.0
    invoice_accuracy_rate: float = 1.0
    last_updated: Optional[datetime] = None


@dataclass
class Product:
    product_id: str
    name: str
    vendors: List[Vendor] = field(default_factory=list)
    is_active: bool = True
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    need_group: Optional[str] = None
    equivalent_unit: Optional[EquivalentUnit] = None
    supply_duration_days: Optional[int] = None


@dataclass
class Store:
    store_id: str
    name: str
    district: Optional[str] = None
    address: Optional[str] = None
    tier: StoreTier = StoreTier.STANDARD
    is_active: bool = True


@dataclass
class NeedGroup:
    need_group_id: str
    name: str
    equivalent_unit: str
    store_minimums: Dict[str, float] = field(default_factory=dict)  # store_id -> minimum qty
    substitution_preferences: List[str] = field(default_factory=list)  # ordered product ids


@dataclass
class WeatherConditions:
    temperature: float = 70.0  # Fahrenheit
    precipitation: float = 0.0  # inches
    seasonal_event: str = ""  # 'storm', 'heatwave', ...


@dataclass
class Promotion:
    product_id: Optional[str]  # None applies to every product in the store
    start_date: date
    end_date: date
    discount_percent: float


@dataclass
class StoreEvent:
    event_type: str  # 'grand_opening', 'renovation', ...
    impact: float  # multiplier
    start_date: date
    end_date: date


@dataclass
class ExternalFactors:
    weather: Optional[WeatherConditions] = None
    holidays: List[str] = field(default_factory=list)  # holiday tags and/or ISO dates
    promotions: List[Promotion] = field(default_factory=list)
    events: List[StoreEvent] = field(default_factory=list)


@dataclass
class LineItem:
    product_id: str
    vendor_id: str
    quantity: int
    unit_cost: float

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_cost


@dataclass
class ReplenishmentTrigger:
    trigger_id: str
    trigger_type: TriggerType
    store_ids: List[str] = field(default_factory=list)
    product_ids: List[str] = field(default_factory=list)
    priority: TriggerPriority = TriggerPriority.MEDIUM
    payload: Dict[str, Any] = field(default_factory=dict)
    processed: bool = False
    created_at: Optional[datetime] = None


@dataclass
class JobError:
    store_id: str
    message: str
    severity: Severity = Severity.MEDIUM
    product_id: Optional[str] = None


@dataclass
class ReplenishmentAlert:
    alert_id: str
    alert_type: str  # STOCKOUT_RISK, COST_VARIANCE, ...
    store_id: str
    severity: Severity
    message: str
    product_id: Optional[str] = None
    vendor_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class ScheduledJobResult:
    job_id: str
    job_type: JobType
    started_at: datetime
    status: JobStatus = JobStatus.RUNNING
    completed_at: Optional[datetime] = None
    stores_processed: int = 0
    products_analyzed: int = 0
    orders_generated: int = 0
    order_ids: List[str] = field(default_factory=list)
    total_cost: float = 0.0
    success_rate: float = 0.0
    errors: List[JobError] = field(default_factory=list)
    forecast_metrics: Dict[str, float] = field(default_factory=dict)
    alerts: List[ReplenishmentAlert] = field(default_factory=list)
    trigger_id: Optional[str] = None
    logs: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
