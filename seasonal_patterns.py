"""
Seasonal Pattern Detection Module

Extracts weekly, monthly, quarterly and event-tag demand multipliers from a
product/store usage history, plus the strength of each seasonal component
and of the linear trend.

Key Features:
- Time series annotation (calendar, holiday, promotion, weather, event tag)
- Group-mean seasonal buckets (7 weekly, 12 monthly, 4 quarterly)
- Event tag multipliers relative to untagged usage
- Seasonal strength = stdev / mean over all bucket means (unobserved as 0)
- Trend strength = |OLS slope| / mean value
- Bounded pattern cache that recomputes when the history changes

Patterns are a pure function of the usage history, so a cached pattern can
always be discarded and recomputed.
"""

import threading
from collections import OrderedDict

import numpy as np
import pandas as pd
from numba import jit

from business_rules import WEATHER_RULES

TIME_SERIES_COLUMNS = [
    "date",
    "value",
    "day_of_week",
    "day_of_month",
    "month",
    "quarter",
    "is_holiday",
    "is_promotion",
    "weather_index",
    "event_type",
]

DEFAULT_CACHE_SIZE = 5000


# ===== NUMBA JIT-COMPILED KERNELS =====

@jit(nopython=True, cache=True)
def _calculate_trend_jit(values: np.ndarray) -> float:
    """JIT-compiled linear trend calculation (slope of best fit line)"""
    n = len(values)
    if n < 2:
        return 0.0

    sum_x = 0.0
    sum_y = 0.0
    sum_xy = 0.0
    sum_xx = 0.0

    for i in range(n):
        x = float(i)
        y = values[i]
        sum_x += x
        sum_y += y
        sum_xy += x * y
        sum_xx += x * x

    denominator = n * sum_xx - sum_x * sum_x
    if abs(denominator) < 1e-10:
        return 0.0

    return (n * sum_xy - sum_x * sum_y) / denominator


# ===== EXTERNAL FACTOR HELPERS =====

def calculate_weather_index(weather) -> float:
    """
    Weather impact index in [0, max_weather_index].

    Extreme temperatures, material precipitation and seasonal weather
    events (storm, heatwave) each add to the index.

    Args:
        weather: WeatherConditions or None

    Returns:
        float index; 0.0 when no weather is known
    """
    if weather is None:
        return 0.0

    rules = WEATHER_RULES
    index = 0.0

    temperature = weather.temperature
    if temperature is not None and (temperature > rules["hot_temperature_f"]
                                    or temperature < rules["cold_temperature_f"]):
        index += rules["extreme_temperature_impact"]

    if weather.precipitation is not None and weather.precipitation > rules["precipitation_threshold"]:
        index += rules["precipitation_impact"]

    event = str(weather.seasonal_event or "").lower()
    index += rules["seasonal_event_impact"].get(event, 0.0)

    return min(rules["max_weather_index"], index)


def is_promotion_active(day, product_id, promotions) -> bool:
    """True when a promotion for this product (or a store-wide one) covers the day."""
    if not promotions:
        return False
    d = pd.Timestamp(day).date()
    for promo in promotions:
        if promo.product_id is not None and promo.product_id != product_id:
            continue
        if pd.Timestamp(promo.start_date).date() <= d <= pd.Timestamp(promo.end_date).date():
            return True
    return False


# ===== TIME SERIES ANNOTATION =====

def build_time_series(usage_history: pd.DataFrame, product_id=None, external_factors=None) -> pd.DataFrame:
    """
    Convert usage observations into an annotated, chronologically sorted series.

    Args:
        usage_history: usage rows for one (product, store) pair
        product_id: used to match product-specific promotions
        external_factors: ExternalFactors or None

    Returns:
        DataFrame with TIME_SERIES_COLUMNS (empty when there is no history)
    """
    if usage_history is None or usage_history.empty:
        return pd.DataFrame(columns=TIME_SERIES_COLUMNS)

    df = usage_history.sort_values("usage_date", kind="mergesort")
    dates = pd.to_datetime(df["usage_date"]).dt.normalize()

    holidays = set(external_factors.holidays) if external_factors else set()
    promotions = external_factors.promotions if external_factors else []
    weather_index = calculate_weather_index(external_factors.weather) if external_factors else 0.0

    if "event_type" in df.columns:
        tags = df["event_type"].astype(object).where(df["event_type"].notna(), None)
    else:
        tags = pd.Series([None] * len(df), index=df.index, dtype=object)

    iso_dates = dates.dt.strftime("%Y-%m-%d")
    ts = pd.DataFrame({
        "date": dates.values,
        "value": pd.to_numeric(df["quantity_used"], errors="coerce").fillna(0).astype(float).values,
        "day_of_week": dates.dt.dayofweek.values,
        "day_of_month": dates.dt.day.values,
        "month": dates.dt.month.values,
        "quarter": dates.dt.quarter.values,
        "is_holiday": (iso_dates.isin(holidays) | (tags == "holiday")).values,
        "is_promotion": [is_promotion_active(d, product_id, promotions) for d in dates],
        "weather_index": weather_index,
        "event_type": tags.values,
    })
    return ts.reset_index(drop=True)


# ===== PATTERN DETECTION =====

def _bucket_means(ts: pd.DataFrame, column: str, buckets: int, offset: int):
    """Group-mean usage per bucket; unobserved buckets are 0 and flagged False."""
    means = np.zeros(buckets)
    observed = np.zeros(buckets, dtype=bool)
    grouped = ts.groupby(column)["value"].mean()
    for key, mean in grouped.items():
        idx = int(key) - offset
        if 0 <= idx < buckets:
            means[idx] = float(mean)
            observed[idx] = True
    return means, observed


def calculate_seasonal_strength(bucket_means) -> float:
    """
    Seasonal strength = stdev(bucket means) / mean(bucket means).

    Every bucket takes part, unobserved ones as 0; 0 when the mean is 0.
    """
    values = np.asarray(bucket_means, dtype=float)
    if values.size == 0:
        return 0.0
    mean = values.mean()
    if mean <= 0:
        return 0.0
    return float(values.std() / mean)


def calculate_trend_strength(values) -> float:
    """Normalized OLS slope |slope| / mean(value); 0 for flat or empty series."""
    arr = np.asarray(values, dtype=np.float64)
    if arr.size < 2:
        return 0.0
    mean = arr.mean()
    if mean <= 0:
        return 0.0
    return float(abs(_calculate_trend_jit(arr)) / mean)


def calculate_holiday_effects(ts: pd.DataFrame) -> dict:
    """
    Multiplier per event tag = mean usage for the tag / mean untagged usage.

    Tags default to 1.0 when there is no usable untagged baseline.
    """
    tagged = ts[ts["event_type"].notna()]
    if tagged.empty:
        return {}

    untagged = ts[ts["event_type"].isna()]
    baseline = float(untagged["value"].mean()) if not untagged.empty else 0.0

    effects = {}
    for tag, group in tagged.groupby("event_type"):
        if baseline > 0:
            effects[str(tag)] = float(group["value"].mean()) / baseline
        else:
            effects[str(tag)] = 1.0
    return effects


def detect_seasonal_patterns(ts: pd.DataFrame, product_id=None, store_id=None) -> dict:
    """
    Detect seasonal patterns in an annotated time series.

    Args:
        ts: output of build_time_series()
        product_id: carried into the result for reporting
        store_id: carried into the result for reporting

    Returns:
        dict: {
            'product_id', 'store_id',
            'patterns': {'weekly': [7], 'monthly': [12], 'quarterly': [4], 'holiday': {tag: multiplier}},
            'observed': {'weekly': [7 bool], 'monthly': [12 bool], 'quarterly': [4 bool]},
            'strength': {'weekly', 'monthly', 'quarterly', 'trend'},
            'overall_mean': float,
            'observations': int
        }
    """
    if ts is None or ts.empty:
        return {
            'product_id': product_id,
            'store_id': store_id,
            'patterns': {'weekly': [0.0] * 7, 'monthly': [0.0] * 12, 'quarterly': [0.0] * 4, 'holiday': {}},
            'observed': {'weekly': [False] * 7, 'monthly': [False] * 12, 'quarterly': [False] * 4},
            'strength': {'weekly': 0.0, 'monthly': 0.0, 'quarterly': 0.0, 'trend': 0.0},
            'overall_mean': 0.0,
            'observations': 0,
        }

    weekly, weekly_obs = _bucket_means(ts, "day_of_week", 7, 0)
    monthly, monthly_obs = _bucket_means(ts, "month", 12, 1)
    quarterly, quarterly_obs = _bucket_means(ts, "quarter", 4, 1)

    return {
        'product_id': product_id,
        'store_id': store_id,
        'patterns': {
            'weekly': weekly.tolist(),
            'monthly': monthly.tolist(),
            'quarterly': quarterly.tolist(),
            'holiday': calculate_holiday_effects(ts),
        },
        'observed': {
            'weekly': weekly_obs.tolist(),
            'monthly': monthly_obs.tolist(),
            'quarterly': quarterly_obs.tolist(),
        },
        'strength': {
            'weekly': calculate_seasonal_strength(weekly),
            'monthly': calculate_seasonal_strength(monthly),
            'quarterly': calculate_seasonal_strength(quarterly),
            'trend': calculate_trend_strength(ts["value"].values),
        },
        'overall_mean': float(ts["value"].mean()),
        'observations': int(len(ts)),
    }


def get_seasonality_factor(pattern: dict, month: int) -> float:
    """
    Seasonal multiplier for a calendar month: monthly bucket mean / overall mean.

    Returns 1.0 when the month was never observed or the overall mean is 0.
    """
    idx = int(month) - 1
    overall = pattern.get('overall_mean', 0.0)
    if overall <= 0 or not pattern['observed']['monthly'][idx]:
        return 1.0
    return float(pattern['patterns']['monthly'][idx] / overall)


# ===== PATTERN CACHE =====

def history_fingerprint(ts: pd.DataFrame) -> int:
    """Stable hash of the observations a pattern was derived from."""
    if ts is None or ts.empty:
        return 0
    frame = ts[["date", "value", "event_type"]].astype({"event_type": str})
    return int(pd.util.hash_pandas_object(frame, index=False).sum())


class SeasonalPatternCache:
    """
    Bounded LRU cache of seasonal patterns keyed by (product_id, store_id).

    Entries carry the fingerprint of the history they were computed from and
    are recomputed whenever the history changes. Safe to share between the
    store worker threads of one run.
    """

    def __init__(self, max_entries=DEFAULT_CACHE_SIZE):
        self.max_entries = max_entries
        self._entries = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self):
        return len(self._entries)

    def get_or_detect(self, product_id, store_id, ts: pd.DataFrame) -> dict:
        key = (product_id, store_id)
        fingerprint = history_fingerprint(ts)

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] == fingerprint:
                self._entries.move_to_end(key)
                self.hits += 1
                return entry[1]

        pattern = detect_seasonal_patterns(ts, product_id, store_id)

        with self._lock:
            self.misses += 1
            self._entries[key] = (fingerprint, pattern)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)
        return pattern

    def invalidate(self, product_id=None, store_id=None):
        """Drop cached patterns for a product and/or store (all when both are None)."""
        with self._lock:
            if product_id is None and store_id is None:
                self._entries.clear()
                return
            for key in list(self._entries):
                if (product_id is None or key[0] == product_id) and (store_id is None or key[1] == store_id):
                    del self._entries[key]
