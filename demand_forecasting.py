"""
Demand Forecasting Module

Generates per-product, per-store daily usage forecasts from the usage history
using an ensemble of simple, interpretable time-series models.

Key Features:
- Trailing-average fallback for short histories (< 30 observations)
- Holt-Winters exponential smoothing (multiplicative weekly season)
- Seasonal decomposition (OLS trend + weekly/monthly deviation + residual)
- Least-squares regression over calendar, event and Fourier features
- Moving average with a fixed day-of-week multiplier table
- Weighted ensemble per horizon, confidence from model agreement
- External-factor adjustment (weather, holidays, promotions, store events)
- Holdout backtest metrics (MAPE, RMSE, accuracy)

Performance Optimizations:
- Numba JIT compilation for the smoothing kernels
- Optional parallel model execution with joblib threads

A forecast is anchored on the day after the last observation, so the same
history and external factors always produce the same output.
"""

import math

import numpy as np
import pandas as pd
from datetime import timedelta
from joblib import Parallel, delayed
from numba import jit
from scipy.stats import linregress

from business_rules import FORECAST_RULES
from seasonal_patterns import (
    build_time_series,
    calculate_weather_index,
    detect_seasonal_patterns,
    get_seasonality_factor,
    is_promotion_active,
)

FORECAST_METHOD_ENSEMBLE = "ensemble"
FORECAST_METHOD_FALLBACK = "fallback"

MODEL_NAMES = [
    "exponential_smoothing",
    "seasonal_decomposition",
    "linear_regression",
    "moving_average",
]

DAYS_PER_YEAR = 365.25


# ===== NUMBA JIT-COMPILED FUNCTIONS FOR SPEED =====

@jit(nopython=True, cache=True)
def _holt_winters_jit(values: np.ndarray, alpha: float, beta: float, gamma: float,
                      season_length: int, horizon: int) -> np.ndarray:
    """
    JIT-compiled multiplicative Holt-Winters.

    Horizons that cannot be computed (zero level, zero seasonal index,
    fewer than two full seasons) are returned as NaN.
    """
    n = len(values)
    out = np.full(horizon, np.nan)
    if n < 2 * season_length:
        return out

    level = 0.0
    second = 0.0
    for i in range(season_length):
        level += values[i]
        second += values[season_length + i]
    level /= season_length
    second /= season_length
    if level <= 0.0:
        return out

    trend = (second - level) / season_length
    seasonal = np.empty(season_length)
    for i in range(season_length):
        seasonal[i] = values[i] / level

    for t in range(season_length, n):
        idx = t % season_length
        s = seasonal[idx]
        prev_level = level
        if s > 0.0:
            level = alpha * (values[t] / s) + (1.0 - alpha) * (level + trend)
        else:
            level = level + trend
        trend = beta * (level - prev_level) + (1.0 - beta) * trend
        if level > 0.0:
            seasonal[idx] = gamma * (values[t] / level) + (1.0 - gamma) * s

    if level <= 0.0:
        return out

    for h in range(horizon):
        s = seasonal[(n + h) % season_length]
        if s > 0.0:
            out[h] = (level + (h + 1) * trend) * s
    return out


# ===== FEATURE ENGINEERING =====

def _prepare_history(ts: pd.DataFrame) -> pd.DataFrame:
    """Add day index (days since first observation) and day of year."""
    history = ts.copy()
    first = history["date"].iloc[0]
    history["day_index"] = (history["date"] - first).dt.days.astype(float)
    history["day_of_year"] = history["date"].dt.dayofyear
    return history


def build_future_frame(anchor, horizon, first_date, product_id=None, external_factors=None) -> pd.DataFrame:
    """
    Calendar and event features for the forecast horizon.

    Args:
        anchor: first forecast date (Timestamp)
        horizon: number of days
        first_date: first history date, origin of the day index
        product_id: used to match product-specific promotions
        external_factors: ExternalFactors or None

    Returns:
        DataFrame with one row per forecast day
    """
    dates = pd.date_range(start=anchor, periods=horizon, freq="D")
    holidays = set(external_factors.holidays) if external_factors else set()
    promotions = external_factors.promotions if external_factors else []
    weather_index = calculate_weather_index(external_factors.weather) if external_factors else 0.0

    return pd.DataFrame({
        "date": dates,
        "day_index": (dates - first_date).days.astype(float),
        "day_of_week": dates.dayofweek,
        "day_of_year": dates.dayofyear,
        "month": dates.month,
        "quarter": dates.quarter,
        "is_holiday": dates.strftime("%Y-%m-%d").isin(holidays),
        "is_promotion": [is_promotion_active(d, product_id, promotions) for d in dates],
        "weather_index": weather_index,
    })


def build_feature_matrix(frame: pd.DataFrame) -> np.ndarray:
    """
    Regression design matrix: intercept, day index, calendar, event flags,
    weather index and weekly/yearly Fourier terms.
    """
    dow = frame["day_of_week"].to_numpy(dtype=float)
    doy = frame["day_of_year"].to_numpy(dtype=float)
    return np.column_stack([
        np.ones(len(frame)),
        frame["day_index"].to_numpy(dtype=float),
        dow,
        frame["month"].to_numpy(dtype=float),
        frame["quarter"].to_numpy(dtype=float),
        frame["is_holiday"].to_numpy(dtype=float),
        frame["is_promotion"].to_numpy(dtype=float),
        frame["weather_index"].to_numpy(dtype=float),
        np.sin(2 * np.pi * dow / 7),
        np.cos(2 * np.pi * dow / 7),
        np.sin(2 * np.pi * doy / DAYS_PER_YEAR),
        np.cos(2 * np.pi * doy / DAYS_PER_YEAR),
    ])


# ===== INDIVIDUAL MODELS =====

def holt_winters_forecast(history, pattern, future, rules=None):
    """Multiplicative Holt-Winters with a weekly season."""
    hw = (rules or FORECAST_RULES)["holt_winters"]
    values = history["value"].to_numpy(dtype=np.float64)
    return _holt_winters_jit(values, hw["alpha"], hw["beta"], hw["gamma"],
                             hw["season_length"], len(future))


def seasonal_decomposition_forecast(history, pattern, future, rules=None):
    """
    Additive decomposition: OLS trend + weekly and monthly deviation from the
    overall mean (observed buckets only) + mean residual.
    """
    fit = linregress(history["day_index"].to_numpy(), history["value"].to_numpy())

    overall = pattern["overall_mean"]
    weekly = np.where(pattern["observed"]["weekly"], np.array(pattern["patterns"]["weekly"]) - overall, 0.0)
    monthly = np.where(pattern["observed"]["monthly"], np.array(pattern["patterns"]["monthly"]) - overall, 0.0)

    def seasonal(frame):
        return weekly[frame["day_of_week"].to_numpy()] + monthly[frame["month"].to_numpy() - 1]

    fitted = fit.intercept + fit.slope * history["day_index"].to_numpy() + seasonal(history)
    residual = float(np.mean(history["value"].to_numpy() - fitted))

    trend = fit.intercept + fit.slope * future["day_index"].to_numpy()
    return trend + seasonal(future) + residual


def linear_regression_forecast(history, pattern, future, rules=None):
    """Least-squares fit over the engineered feature vector."""
    X = build_feature_matrix(history)
    y = history["value"].to_numpy(dtype=float)
    coef, _, _, _ = np.linalg.lstsq(X, y, rcond=None)
    return build_feature_matrix(future) @ coef


def moving_average_forecast(history, pattern, future, rules=None):
    """Trailing mean of min(14, n // 3) observations scaled by weekday multipliers."""
    ma = (rules or FORECAST_RULES)["moving_average"]
    values = history["value"].to_numpy(dtype=float)
    window = min(ma["max_window"], len(values) // 3)
    if window < 1:
        raise ValueError("not enough observations for a moving average")
    base = values[-window:].mean()
    multipliers = np.array(ma["weekday_multipliers"])
    return base * multipliers[future["day_of_week"].to_numpy()]


FORECAST_MODELS = {
    "exponential_smoothing": holt_winters_forecast,
    "seasonal_decomposition": seasonal_decomposition_forecast,
    "linear_regression": linear_regression_forecast,
    "moving_average": moving_average_forecast,
}


def _run_model(name, history, pattern, future, rules):
    """
    Run one model, isolating its failure.

    Returns:
        tuple: (name, predictions array or None, log message or None)
    """
    try:
        predictions = np.asarray(FORECAST_MODELS[name](history, pattern, future, rules), dtype=float)
    except Exception as e:
        return name, None, f"WARNING: Model '{name}' failed: {e}"

    if predictions.shape != (len(future),):
        return name, None, f"WARNING: Model '{name}' returned shape {predictions.shape}, expected ({len(future)},)"

    predictions[~np.isfinite(predictions)] = np.nan
    if np.isnan(predictions).all():
        return name, None, f"WARNING: Model '{name}' produced no usable horizon"
    return name, predictions, None


# ===== ENSEMBLE =====

def ensemble_forecasts(model_outputs: dict, rules=None) -> dict:
    """
    Combine model projections per horizon.

    Only models with a finite value at a horizon contribute to it, with their
    weights renormalized. Confidence is derived from model agreement on day 0
    and the interval from the spread of model predictions at each horizon.

    Args:
        model_outputs: {model_name: predictions array}
        rules: Forecast rules (defaults to FORECAST_RULES)

    Returns:
        dict with values, lower, upper, confidence, models_used
        or None when no model has a day-0 prediction
    """
    rules = rules or FORECAST_RULES
    weights = rules["model_weights"]
    z = rules["interval_z_score"]

    names = [name for name in MODEL_NAMES if name in model_outputs]
    if not names:
        return None

    matrix = np.vstack([model_outputs[name] for name in names])
    weight_vec = np.array([weights[name] for name in names])

    if not np.isfinite(matrix[:, 0]).any():
        return None

    horizon = matrix.shape[1]
    values = np.zeros(horizon)
    lower = np.zeros(horizon)
    upper = np.zeros(horizon)

    for h in range(horizon):
        column = matrix[:, h]
        mask = np.isfinite(column)
        if not mask.any():
            # No model reaches this horizon; carry the previous day
            values[h], lower[h], upper[h] = values[h - 1], lower[h - 1], upper[h - 1]
            continue
        value = float(np.dot(column[mask], weight_vec[mask]) / weight_vec[mask].sum())
        value = max(0.0, value)
        spread = float(np.std(column[mask]))
        values[h] = value
        lower[h] = max(0.0, value - z * spread)
        upper[h] = value + z * spread

    day0 = matrix[:, 0][np.isfinite(matrix[:, 0])]
    mean0 = float(day0.mean())
    std0 = float(day0.std())
    if mean0 > 0:
        confidence = max(rules["min_confidence"], 1.0 - std0 / mean0)
    else:
        confidence = 1.0 if std0 == 0 else rules["min_confidence"]

    return {
        "values": values,
        "lower": lower,
        "upper": upper,
        "confidence": float(min(1.0, confidence)),
        "models_used": [name for name in names if np.isfinite(model_outputs[name]).any()],
    }


def run_ensemble(ts: pd.DataFrame, pattern: dict, product_id=None, external_factors=None,
                 horizon=None, rules=None, use_parallel=False):
    """
    Run all models over an annotated series and ensemble them.

    Returns:
        tuple: (logs, ensemble dict or None)
    """
    rules = rules or FORECAST_RULES
    horizon = horizon or rules["horizon_days"]
    logs = []

    history = _prepare_history(ts)
    anchor = history["date"].iloc[-1] + timedelta(days=1)
    future = build_future_frame(anchor, horizon, history["date"].iloc[0], product_id, external_factors)

    if use_parallel:
        results = Parallel(n_jobs=len(MODEL_NAMES), prefer="threads")(
            delayed(_run_model)(name, history, pattern, future, rules) for name in MODEL_NAMES
        )
    else:
        results = [_run_model(name, history, pattern, future, rules) for name in MODEL_NAMES]

    outputs = {}
    for name, predictions, message in results:
        if message:
            logs.append(message)
        if predictions is not None:
            outputs[name] = predictions

    return logs, ensemble_forecasts(outputs, rules)


# ===== EXTERNAL FACTORS =====

def _window_overlaps(start, end, window_start, window_end) -> bool:
    return pd.Timestamp(start) <= window_end and pd.Timestamp(end) >= window_start


def calculate_external_factor_multiplier(product_id, anchor, horizon, external_factors=None,
                                         holiday_effects=None):
    """
    Single multiplicative adjustment for the whole forecast.

    Weather contributes (1 + weather index); holiday tags listed in the
    external factors use the detected tag multipliers; promotions for the
    product (or store-wide) and store events overlapping the forecast window
    are compounded.

    Args:
        product_id: product being forecast
        anchor: first forecast date
        horizon: forecast length in days
        external_factors: ExternalFactors or None
        holiday_effects: {tag: multiplier} from the seasonal pattern, or None

    Returns:
        tuple: (multiplier, list of applied adjustment descriptions)
    """
    if external_factors is None:
        return 1.0, []

    window_start = pd.Timestamp(anchor).normalize()
    window_end = window_start + timedelta(days=horizon - 1)
    multiplier = 1.0
    applied = []

    weather_index = calculate_weather_index(external_factors.weather)
    if weather_index > 0:
        multiplier *= 1.0 + weather_index
        applied.append(f"weather x{1.0 + weather_index:.2f}")

    if holiday_effects:
        for tag in external_factors.holidays:
            if tag in holiday_effects:
                multiplier *= holiday_effects[tag]
                applied.append(f"holiday '{tag}' x{holiday_effects[tag]:.2f}")

    for promo in external_factors.promotions:
        if promo.product_id is not None and promo.product_id != product_id:
            continue
        if _window_overlaps(promo.start_date, promo.end_date, window_start, window_end):
            factor = 1.0 + promo.discount_percent / 100.0
            multiplier *= factor
            applied.append(f"promotion x{factor:.2f}")

    for event in external_factors.events:
        if _window_overlaps(event.start_date, event.end_date, window_start, window_end):
            multiplier *= event.impact
            applied.append(f"event '{event.event_type}' x{event.impact:.2f}")

    return multiplier, applied


# ===== ACCURACY METRICS =====

def calculate_mape(actual, forecast):
    """
    Calculate Mean Absolute Percentage Error

    Args:
        actual: Actual value
        forecast: Forecasted value

    Returns:
        float: MAPE percentage
    """
    if actual == 0:
        return 100.0 if forecast != 0 else 0.0

    return abs((actual - forecast) / actual) * 100


def backtest_forecast(ts: pd.DataFrame, product_id=None, rules=None) -> dict:
    """
    Holdout backtest: forecast the last `backtest_days` observations from the
    rest of the history and score the ensemble against them.

    Returns:
        dict with accuracy, mape (fraction), rmse; None when the history is too
        short to leave an ensemble-sized training window
    """
    rules = rules or FORECAST_RULES
    holdout = rules["backtest_days"]
    if len(ts) < rules["min_history_for_ensemble"] + holdout:
        return None

    train = ts.iloc[:-holdout].reset_index(drop=True)
    actual = ts["value"].iloc[-holdout:].to_numpy(dtype=float)
    pattern = detect_seasonal_patterns(train)
    _, result = run_ensemble(train, pattern, product_id, horizon=holdout, rules=rules)
    if result is None:
        return None

    predicted = result["values"]
    mape = float(np.mean([calculate_mape(a, f) for a, f in zip(actual, predicted)])) / 100.0
    rmse = float(np.sqrt(np.mean((actual - predicted) ** 2)))
    return {
        "accuracy": max(0.0, 1.0 - mape),
        "mape": mape,
        "rmse": rmse,
    }


# ===== FORECAST ENTRY POINT =====

def _fallback_forecast(ts: pd.DataFrame, product_id, external_factors, rules) -> dict:
    """Trailing-average forecast for short histories."""
    window = ts["value"].iloc[-rules["fallback_window"]:].to_numpy(dtype=float)
    avg = float(window.mean()) if len(window) else 0.0
    variability = float(window.std() / avg) if avg > 0 else 0.0

    horizon = rules["horizon_days"]
    anchor = (ts["date"].iloc[-1] + timedelta(days=1)) if len(ts) else None
    multiplier, applied = (1.0, [])
    if anchor is not None:
        multiplier, applied = calculate_external_factor_multiplier(product_id, anchor, horizon, external_factors)

    daily = avg * multiplier
    return {
        "product_id": product_id,
        "forecasted_daily_usage": daily,
        "confidence": rules["fallback_confidence"],
        "seasonality_factor": rules["fallback_seasonality"],
        "trend_component": 0.0,
        "next_7_days": [daily] * rules["short_horizon_days"],
        "next_30_days": [daily] * horizon,
        "confidence_interval": {
            "lower": [daily * 0.8] * horizon,
            "upper": [daily * 1.2] * horizon,
        },
        "model_metrics": {
            "accuracy": 0.5,
            "mape": 0.2,
            "rmse": daily * 0.3,
            "models_used": [FORECAST_METHOD_FALLBACK],
        },
        "usage_variability": variability,
        "forecast_method": FORECAST_METHOD_FALLBACK,
        "external_adjustments": applied,
    }


def generate_forecast(product_id, store_id, usage_history, external_factors=None,
                      pattern_cache=None, rules=None, use_parallel=False):
    """
    Forecast daily usage for one product at one store.

    Args:
        product_id: Product identifier
        store_id: Store identifier
        usage_history: usage DataFrame for the pair (any order; sorted here)
        external_factors: ExternalFactors or None
        pattern_cache: SeasonalPatternCache shared across a run, or None
        rules: Forecast rules (defaults to FORECAST_RULES)
        use_parallel: Run the four models on joblib threads

    Returns:
        dict: forecasted_daily_usage, confidence, seasonality_factor,
              trend_component, next_7_days, next_30_days,
              confidence_interval {lower, upper}, model_metrics,
              usage_variability, forecast_method, logs
    """
    rules = rules or FORECAST_RULES
    logs = []

    ts = build_time_series(usage_history, product_id, external_factors)

    if len(ts) < rules["min_history_for_ensemble"]:
        logs.append(f"INFO: {product_id}@{store_id}: {len(ts)} observations, using trailing average fallback")
        result = _fallback_forecast(ts, product_id, external_factors, rules)
        result["store_id"] = store_id
        result["logs"] = logs
        return result

    # ===== STEP 1: SEASONAL PATTERNS =====
    if pattern_cache is not None:
        pattern = pattern_cache.get_or_detect(product_id, store_id, ts)
    else:
        pattern = detect_seasonal_patterns(ts, product_id, store_id)

    # ===== STEP 2: MODEL ENSEMBLE =====
    model_logs, ensemble = run_ensemble(ts, pattern, product_id, external_factors,
                                        rules=rules, use_parallel=use_parallel)
    logs.extend(f"{msg} ({product_id}@{store_id})" for msg in model_logs)

    if ensemble is None:
        logs.append(f"WARNING: {product_id}@{store_id}: all forecast models failed, using trailing average fallback")
        result = _fallback_forecast(ts, product_id, external_factors, rules)
        result["store_id"] = store_id
        result["logs"] = logs
        return result

    # ===== STEP 3: EXTERNAL FACTORS =====
    anchor = ts["date"].iloc[-1] + timedelta(days=1)
    horizon = rules["horizon_days"]
    multiplier, applied = calculate_external_factor_multiplier(
        product_id, anchor, horizon, external_factors, pattern["patterns"]["holiday"]
    )
    if applied:
        logs.append(f"INFO: {product_id}@{store_id}: external adjustment x{multiplier:.3f} ({', '.join(applied)})")

    values = ensemble["values"] * multiplier
    lower = ensemble["lower"] * multiplier
    upper = ensemble["upper"] * multiplier

    mean_prediction = float(values.mean())
    half_width = float(np.mean((upper - lower) / 2.0))
    variability = half_width / mean_prediction if mean_prediction > 0 else 0.0

    # ===== STEP 4: BACKTEST METRICS =====
    metrics = backtest_forecast(ts, product_id, rules) or {"accuracy": None, "mape": None, "rmse": None}
    metrics["models_used"] = ensemble["models_used"]

    return {
        "product_id": product_id,
        "store_id": store_id,
        "forecasted_daily_usage": float(values[0]),
        "confidence": ensemble["confidence"],
        "seasonality_factor": get_seasonality_factor(pattern, anchor.month),
        "trend_component": pattern["strength"]["trend"],
        "next_7_days": values[:rules["short_horizon_days"]].tolist(),
        "next_30_days": values.tolist(),
        "confidence_interval": {
            "lower": lower.tolist(),
            "upper": upper.tolist(),
        },
        "model_metrics": metrics,
        "usage_variability": variability,
        "forecast_method": FORECAST_METHOD_ENSEMBLE,
        "external_adjustments": applied,
        "logs": logs,
    }


def summarize_forecast_metrics(forecasts) -> dict:
    """
    Aggregate forecast quality across many forecasts.

    Args:
        forecasts: iterable of generate_forecast() results

    Returns:
        dict: forecasts, ensemble_share, average_confidence, average_accuracy,
              average_mape (accuracy/MAPE over backtested forecasts only)
    """
    forecasts = list(forecasts)
    if not forecasts:
        return {"forecasts": 0, "ensemble_share": 0.0, "average_confidence": 0.0,
                "average_accuracy": 0.0, "average_mape": 0.0}

    ensemble = [f for f in forecasts if f["forecast_method"] == FORECAST_METHOD_ENSEMBLE]
    scored = [f["model_metrics"] for f in ensemble if f["model_metrics"].get("mape") is not None]

    def _mean(values):
        values = [v for v in values if v is not None and not math.isnan(v)]
        return float(np.mean(values)) if values else 0.0

    return {
        "forecasts": len(forecasts),
        "ensemble_share": len(ensemble) / len(forecasts),
        "average_confidence": _mean(f["confidence"] for f in forecasts),
        "average_accuracy": _mean(m["accuracy"] for m in scored),
        "average_mape": _mean(m["mape"] for m in scored),
    }
