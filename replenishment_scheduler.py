"""
Replenishment Scheduler Module

Drives the replenishment engine on fixed cadences (nightly, weekly, monthly)
and in response to discrete triggers (stockout alerts, weather events,
promotions, vendor disruptions).

Key Features:
- One JobState record per job type (status, next fire time, cancel token,
  last result); IDLE -> RUNNING -> SUCCESS / PARTIAL_FAILURE / FAILED -> IDLE
- Wall-clock next-fire computation in the configured timezone (pytz +
  dateutil relativedelta), re-armed after every run
- Same-type runs never overlap; different types may run concurrently
- Per-store fan-out on joblib threads with per-store error isolation
- One system-initiated order per store per run
- Trigger runs with a shorter lookback, a restricted universe and
  perturbed external factors, marked processed exactly once
- Bounded in-memory job history

Nothing raises out of a run: failures are reported in the
ScheduledJobResult and the job is re-armed for its next tick.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional

import pandas as pd
import pytz
from dateutil.relativedelta import relativedelta
from joblib import Parallel, delayed

from business_rules import (
    SCHEDULE_RULES,
    TRIGGER_RULES,
    get_replenishment_rules,
    get_trigger_error_severity,
    parse_time_of_day,
)
from demand_forecasting import summarize_forecast_metrics
from models import (
    ExternalFactors,
    JobError,
    JobStatus,
    JobType,
    Promotion,
    ScheduledJobResult,
    Severity,
    TriggerPriority,
    TriggerType,
    WeatherConditions,
)
from need_groups import resolve_need_group_fulfillment
from replenishment_planning import plan_store_replenishment, suggestions_to_line_items
from seasonal_patterns import SeasonalPatternCache
from stockout_prediction import build_seasonal_insights, generate_replenishment_alerts

CADENCE_JOBS = [JobType.NIGHTLY, JobType.WEEKLY, JobType.MONTHLY]

TRIGGER_PRIORITY_ORDER = {
    TriggerPriority.CRITICAL: 0,
    TriggerPriority.HIGH: 1,
    TriggerPriority.MEDIUM: 2,
    TriggerPriority.LOW: 3,
}


def trigger_rank(trigger) -> int:
    """Sort key for pending triggers; unknown priorities rank after LOW."""
    try:
        return TRIGGER_PRIORITY_ORDER[TriggerPriority(trigger.priority)]
    except ValueError:
        return len(TRIGGER_PRIORITY_ORDER)


@dataclass
class JobState:
    job_type: JobType
    status: JobStatus = JobStatus.IDLE
    next_fire_at: Optional[datetime] = None
    cancel_token: threading.Event = field(default_factory=threading.Event)
    last_result: Optional[ScheduledJobResult] = None
    timer: Optional[threading.Timer] = None
    lock: threading.Lock = field(default_factory=threading.Lock)


# ===== TRIGGER PERTURBATIONS =====

def apply_trigger_perturbation(trigger, factors: ExternalFactors, as_of, horizon_days=30):
    """
    Perturb a store's external factors for a trigger run.

    - WEATHER_EVENT: synthetic storm weather (payload 'weather' overrides keys)
    - PROMOTION: promotion on the trigger's products (or store-wide) with the
      payload's discount_percent
    - VENDOR_DISRUPTION: vendors in the payload's vendor_ids are excluded

    Args:
        trigger: ReplenishmentTrigger
        factors: the store's ExternalFactors (not modified)
        as_of: run timestamp
        horizon_days: length of an injected promotion

    Returns:
        tuple: (perturbed ExternalFactors, set of excluded vendor ids)
    """
    payload = trigger.payload or {}
    factors = replace(factors, holidays=list(factors.holidays), promotions=list(factors.promotions),
                      events=list(factors.events))
    excluded = set()
    trigger_type = TriggerType(trigger.trigger_type)

    if trigger_type == TriggerType.WEATHER_EVENT:
        weather = dict(TRIGGER_RULES["weather_override"])
        weather.update(payload.get("weather", {}))
        factors.weather = WeatherConditions(**weather)

    elif trigger_type == TriggerType.PROMOTION:
        discount = float(payload.get("discount_percent", TRIGGER_RULES["default_promotion_discount_percent"]))
        start = pd.Timestamp(as_of).date()
        end = start + timedelta(days=int(payload.get("duration_days", horizon_days)))
        for product_id in (trigger.product_ids or [None]):
            factors.promotions.append(Promotion(product_id, start, end, discount))

    elif trigger_type == TriggerType.VENDOR_DISRUPTION:
        vendor_ids = payload.get("vendor_ids") or []
        if payload.get("vendor_id"):
            vendor_ids = list(vendor_ids) + [payload["vendor_id"]]
        excluded = set(vendor_ids)

    return factors, excluded


# ===== ORCHESTRATOR =====

class ReplenishmentOrchestrator:
    """
    Scheduler and trigger processor for the replenishment engine.

    Args:
        sources: collaborator (see collaborators.InMemoryReplenishmentSources)
        rules: replenishment rule overrides (merged into REPLENISHMENT_RULES)
        timezone: schedule timezone name (defaults to SCHEDULE_RULES['timezone'])
        n_jobs: maximum parallel store workers
        schedule: schedule configuration (defaults to SCHEDULE_RULES)
        clock: callable returning the current aware datetime
    """

    def __init__(self, sources, rules=None, timezone=None, n_jobs=None, schedule=None, clock=None):
        self.sources = sources
        self.rules = get_replenishment_rules(rules)
        self.schedule = copy.deepcopy(schedule or SCHEDULE_RULES)
        self.timezone = pytz.timezone(timezone or self.schedule["timezone"])
        self.n_jobs = n_jobs or self.schedule["max_store_workers"]
        self.clock = clock or (lambda: datetime.now(pytz.utc))
        self.pattern_cache = SeasonalPatternCache()

        self._states = {job_type: JobState(job_type) for job_type in CADENCE_JOBS + [JobType.TRIGGER]}
        self._history = deque(maxlen=self.schedule["history_limit"])
        self._history_lock = threading.Lock()
        self._arm_lock = threading.Lock()
        self._job_seq = itertools.count(1)

    # ===== SCHEDULING =====

    def get_job_state(self, job_type) -> JobState:
        return self._states[JobType(job_type)]

    def _job_config(self, job_type):
        key = JobType(job_type).value
        jobs = self.schedule["jobs"]
        if key not in jobs:
            raise ValueError(f"No schedule configured for job type '{key}'")
        return jobs[key]

    def compute_next_fire_time(self, job_type, now=None) -> datetime:
        """
        Next wall-clock fire time strictly after `now`.

        Computed from the local calendar each time, so daylight saving
        transitions never accumulate drift.

        Args:
            job_type: NIGHTLY, WEEKLY or MONTHLY
            now: aware datetime (naive values are taken as schedule-local)

        Returns:
            aware datetime in the schedule timezone

        Raises:
            ValueError: unknown job type or malformed time of day
        """
        job_type = JobType(job_type)
        config = self._job_config(job_type)
        hour, minute = parse_time_of_day(config["time_of_day"])

        now = now or self.clock()
        if now.tzinfo is None:
            now = self.timezone.localize(now)
        local = now.astimezone(self.timezone).replace(tzinfo=None)
        candidate = local.replace(hour=hour, minute=minute, second=0, microsecond=0)

        if job_type == JobType.NIGHTLY:
            if candidate <= local:
                candidate += relativedelta(days=1)
        elif job_type == JobType.WEEKLY:
            candidate += relativedelta(weekday=int(config.get("day_of_week", 0)))
            if candidate <= local:
                candidate += relativedelta(weeks=1)
        elif job_type == JobType.MONTHLY:
            day = int(config.get("day_of_month", 1))
            candidate += relativedelta(day=day)
            if candidate <= local:
                candidate += relativedelta(months=1, day=day)
        else:
            raise ValueError(f"Job type '{job_type.value}' is not scheduled")

        return self.timezone.normalize(self.timezone.localize(candidate))

    def start(self):
        """Arm one timer per enabled cadence job."""
        with self._arm_lock:
            for state in self._states.values():
                state.cancel_token.clear()
        for job_type in CADENCE_JOBS:
            if self._job_config(job_type).get("enabled", True):
                self._arm(job_type)

    def _arm(self, job_type):
        state = self._states[job_type]
        with self._arm_lock:
            if state.cancel_token.is_set():
                return
            now = self.clock()
            fire_at = self.compute_next_fire_time(job_type, now)
            delay = max(0.0, (fire_at - now).total_seconds())
            timer = threading.Timer(delay, self._fire, args=(job_type,))
            timer.daemon = True
            state.timer = timer
            state.next_fire_at = fire_at
            timer.start()

    def _fire(self, job_type):
        state = self._states[job_type]
        try:
            with state.lock:
                if state.cancel_token.is_set():
                    return
                self._execute_job(job_type, state)
        finally:
            # A failed tick still waits for the next normal one
            self._arm(job_type)

    def stop(self, wait=True):
        """
        Cancel pending timers.

        In-flight runs are never interrupted; with wait=True this blocks
        until they have finished and recorded their result.
        """
        with self._arm_lock:
            for state in self._states.values():
                state.cancel_token.set()
                if state.timer is not None:
                    state.timer.cancel()
                state.next_fire_at = None
        if wait:
            for state in self._states.values():
                with state.lock:
                    pass

    # ===== JOB EXECUTION =====

    def run_job(self, job_type) -> ScheduledJobResult:
        """
        Run a cadence job now (blocks while a run of the same type is in flight).

        Raises:
            ValueError: for job types that are not cadence jobs
        """
        job_type = JobType(job_type)
        if job_type not in CADENCE_JOBS:
            raise ValueError(f"'{job_type.value}' is not a cadence job, use process_trigger()")
        state = self._states[job_type]
        with state.lock:
            return self._execute_job(job_type, state)

    def _execute_job(self, job_type, state, trigger=None) -> ScheduledJobResult:
        """Run one pass; any escaping exception is recorded as a FAILED result."""
        state.status = JobStatus.RUNNING
        try:
            if trigger is not None:
                lookback = TRIGGER_RULES["lookback_days"]
            else:
                lookback = self._job_config(job_type)["lookback_days"]
            result = self._run_pass(job_type, lookback, trigger)
        except Exception as e:
            result = self._failed_result(job_type, f"Job failed: {e}", trigger)
        finally:
            state.status = JobStatus.IDLE
        state.last_result = result
        self._record(result)
        return result

    def _failed_result(self, job_type, message, trigger=None) -> ScheduledJobResult:
        now = self.clock()
        result = ScheduledJobResult(
            job_id=self._next_job_id(job_type),
            job_type=job_type,
            started_at=now,
            status=JobStatus.FAILED,
            completed_at=now,
            trigger_id=trigger.trigger_id if trigger is not None else None,
        )
        result.errors.append(JobError(store_id="*", message=message, severity=Severity.HIGH))
        result.logs.append(f"ERROR: {message}")
        return result

    def _record(self, result):
        with self._history_lock:
            self._history.append(result)

    def _next_job_id(self, job_type):
        return f"job_{job_type.value.lower()}_{next(self._job_seq):05d}"

    def _run_pass(self, job_type, lookback_days, trigger=None) -> ScheduledJobResult:
        """Full engine pass over the (possibly restricted) store universe."""
        started = self.clock()
        result = ScheduledJobResult(
            job_id=self._next_job_id(job_type),
            job_type=job_type,
            started_at=started,
            trigger_id=trigger.trigger_id if trigger is not None else None,
        )
        logs = result.logs
        logs.append(f"--- Replenishment {job_type.value} run {result.job_id} ---")

        if trigger is not None:
            severity = Severity(get_trigger_error_severity(TriggerPriority(trigger.priority).value))
        else:
            severity = Severity(TRIGGER_RULES["error_severity"]["default"])

        # ===== STEP 1: CATALOG =====
        try:
            stores = self.sources.get_active_stores()
            products = self.sources.get_active_products()
            need_groups = self._fetch_optional("need groups", self.sources.get_need_groups, [], logs)
            vendor_performance = self._fetch_optional("vendor performance", self.sources.get_vendor_performance,
                                                      [], logs)
        except Exception as e:
            logs.append(f"ERROR: Catalog fetch failed: {e}")
            result.errors.append(JobError(store_id="*", message=f"Catalog fetch failed: {e}",
                                          severity=Severity.HIGH))
            result.status = JobStatus.FAILED
            result.completed_at = self.clock()
            return result

        if trigger is not None:
            if trigger.store_ids:
                wanted = set(trigger.store_ids)
                stores = [s for s in stores if s.store_id in wanted]
            wanted = set(trigger.product_ids or [])
            matched = [p for p in products if p.product_id in wanted]
            if matched:
                products = matched
            elif wanted:
                logs.append(f"WARNING: Trigger {trigger.trigger_id} matches no active products, "
                            f"using full active catalog")
            else:
                logs.append(f"INFO: Trigger {trigger.trigger_id} names no products, using full active catalog")

        logs.append(f"INFO: {len(stores)} stores, {len(products)} products, {lookback_days}-day lookback")

        # ===== STEP 2: PER-STORE FAN-OUT =====
        as_of = started
        if len(stores) > 1 and self.n_jobs != 1:
            outcomes = Parallel(n_jobs=min(self.n_jobs, len(stores)), prefer="threads")(
                delayed(self._process_store_safe)(store, products, need_groups, vendor_performance,
                                                  lookback_days, trigger, severity, as_of)
                for store in stores
            )
        else:
            outcomes = [
                self._process_store_safe(store, products, need_groups, vendor_performance,
                                         lookback_days, trigger, severity, as_of)
                for store in stores
            ]

        # ===== STEP 3: AGGREGATE =====
        forecasts = []
        succeeded = 0
        for outcome in outcomes:
            logs.extend(outcome["logs"])
            result.stores_processed += 1
            if outcome["error"] is not None:
                result.errors.append(outcome["error"])
                continue
            succeeded += 1
            result.products_analyzed += outcome["products_analyzed"]
            forecasts.extend(outcome["forecasts"])
            result.alerts.extend(outcome["alerts"])
            if outcome["order_id"] is not None:
                result.orders_generated += 1
                result.order_ids.append(outcome["order_id"])
                result.total_cost += outcome["total_cost"]

        result.success_rate = succeeded / len(outcomes) if outcomes else 0.0
        result.forecast_metrics = summarize_forecast_metrics(forecasts)
        result.status = JobStatus.SUCCESS if not result.errors else JobStatus.PARTIAL_FAILURE
        result.completed_at = self.clock()

        logs.append(f"INFO: {job_type.value} run finished: {result.status.value}, "
                    f"{succeeded}/{len(outcomes)} stores, {result.orders_generated} orders, "
                    f"${result.total_cost:,.2f}")
        return result

    def _fetch_optional(self, label, getter, default, logs):
        try:
            value = getter()
        except Exception as e:
            logs.append(f"WARNING: Could not fetch {label}: {e}; using defaults")
            return default
        return value if value is not None else default

    def gather_external_factors(self, store_id, logs):
        """Context for one store; every fetch failure degrades to a neutral default."""
        return ExternalFactors(
            weather=self._fetch_optional(f"weather for {store_id}",
                                         lambda: self.sources.get_weather(store_id), None, logs),
            holidays=list(self._fetch_optional("holidays", self.sources.get_holidays, [], logs)),
            promotions=list(self._fetch_optional(f"promotions for {store_id}",
                                                 lambda: self.sources.get_promotions(store_id), [], logs)),
            events=list(self._fetch_optional(f"store events for {store_id}",
                                             lambda: self.sources.get_store_events(store_id), [], logs)),
        )

    def _process_store_safe(self, store, products, need_groups, vendor_performance, lookback_days,
                            trigger, severity, as_of):
        """Per-store isolation boundary: any exception becomes a JobError."""
        try:
            return self._process_store(store, products, need_groups, vendor_performance,
                                       lookback_days, trigger, as_of)
        except Exception as e:
            return {
                "logs": [f"ERROR: Store {store.store_id} failed: {e}"],
                "error": JobError(store_id=store.store_id, message=str(e), severity=severity),
            }

    def _process_store(self, store, products, need_groups, vendor_performance, lookback_days, trigger, as_of):
        store_id = store.store_id
        logs = []

        # One consistent snapshot per store per run
        inventory_df = self.sources.get_inventory_snapshot(store_id)
        usage_df = self.sources.get_usage_history(store_id, lookback_days)
        factors = self.gather_external_factors(store_id, logs)

        excluded = set()
        if trigger is not None:
            factors, excluded = apply_trigger_perturbation(trigger, factors, as_of)
            if excluded:
                logs.append(f"INFO: Store {store_id}: excluding vendors {sorted(excluded)}")

        # Products of a configured need group are resolved as a group
        group_ids = {g.need_group_id for g in need_groups}
        individual = [p for p in products if p.need_group not in group_ids]

        plan_logs, suggestions_df, forecasts = plan_store_replenishment(
            store, individual, inventory_df, usage_df, factors, self.rules,
            vendor_performance or None, excluded, self.pattern_cache, as_of,
        )
        logs.extend(plan_logs)
        line_items = suggestions_to_line_items(suggestions_df)

        for need_group in need_groups:
            group_products = [
                replace(p, vendors=[v for v in p.vendors if v.vendor_id not in excluded])
                for p in products if p.need_group == need_group.need_group_id
            ]
            if not group_products:
                continue
            group_logs, group_items, _ = resolve_need_group_fulfillment(
                store, need_group, group_products, inventory_df, usage_df, self.rules,
                factors, self.pattern_cache,
            )
            logs.extend(group_logs)
            line_items.extend(group_items)

        insight_logs, _, _ = build_seasonal_insights(store_id, forecasts, inventory_df, as_of)
        logs.extend(insight_logs)
        alerts = generate_replenishment_alerts(suggestions_df, store_id, as_of)

        order_id = None
        total_cost = 0.0
        if line_items:
            order_id = self.sources.create_system_order(store_id, line_items)
            total_cost = float(sum(item.line_total for item in line_items))
            logs.append(f"INFO: Created order {order_id} for store {store_id}: "
                        f"{len(line_items)} lines, ${total_cost:,.2f}")

        return {
            "logs": logs,
            "error": None,
            "products_analyzed": len(products),
            "forecasts": forecasts,
            "alerts": alerts,
            "order_id": order_id,
            "total_cost": total_cost,
        }

    # ===== TRIGGERS =====

    def process_trigger(self, trigger) -> Optional[ScheduledJobResult]:
        """
        Run the engine for one trigger and mark it processed exactly once.

        The trigger is marked even when its run fails.

        Returns:
            ScheduledJobResult, or None when the trigger was already processed
        """
        state = self._states[JobType.TRIGGER]
        with state.lock:
            if trigger.processed:
                return None
            result = None
            try:
                result = self._execute_job(JobType.TRIGGER, state, trigger)
            finally:
                try:
                    self.sources.mark_trigger_processed(trigger.trigger_id)
                    trigger.processed = True
                except Exception as e:
                    if result is not None:
                        result.logs.append(f"ERROR: Could not mark trigger {trigger.trigger_id} processed: {e}")
            return result

    def process_pending_triggers(self):
        """
        Drain the trigger source, most urgent first.

        Triggers with an unknown priority run last.

        Returns:
            list of ScheduledJobResult
        """
        try:
            pending = list(self.sources.get_pending_triggers())
        except Exception as e:
            result = self._failed_result(JobType.TRIGGER, f"Trigger fetch failed: {e}")
            self._record(result)
            return [result]

        pending.sort(key=trigger_rank)
        results = []
        for trigger in pending:
            result = self.process_trigger(trigger)
            if result is not None:
                results.append(result)
        return results

    # ===== HISTORY =====

    def get_job_history(self, job_type=None, limit=50):
        """Most recent job results first, optionally for one job type."""
        with self._history_lock:
            results = list(self._history)
        if job_type is not None:
            job_type = JobType(job_type)
            results = [r for r in results if r.job_type == job_type]
        return list(reversed(results))[:limit]
