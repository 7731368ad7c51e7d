"""
Tests for demand forecasting module
"""

import pytest
import pandas as pd
import numpy as np
from datetime import date

from conftest import AS_OF, assert_log_contains, constant_usage
from data_loader import generate_sample_usage, normalize_usage_history
from demand_forecasting import (
    FORECAST_METHOD_ENSEMBLE,
    FORECAST_METHOD_FALLBACK,
    MODEL_NAMES,
    backtest_forecast,
    build_feature_matrix,
    build_future_frame,
    calculate_external_factor_multiplier,
    calculate_mape,
    ensemble_forecasts,
    generate_forecast,
    summarize_forecast_metrics,
)
from models import ExternalFactors, Promotion, StoreEvent, WeatherConditions
from seasonal_patterns import SeasonalPatternCache, build_time_series

FORECAST_KEYS = [
    "product_id", "store_id", "forecasted_daily_usage", "confidence", "seasonality_factor",
    "trend_component", "next_7_days", "next_30_days", "confidence_interval", "model_metrics",
    "usage_variability", "forecast_method", "external_adjustments", "logs",
]


@pytest.fixture
def sample_usage():
    """90 days of weekly-patterned usage for one product at one store"""
    return generate_sample_usage(["P1"], ["S1"], days=90, as_of=AS_OF, base_usage=10.0)


class TestFallbackForecast:
    """Test the trailing average path for short histories"""

    def test_short_history_uses_last_seven_days(self):
        records = constant_usage("P1", "S1", 2, days=20)
        for record in records[-7:]:
            record["quantity_used"] = 10
        forecast = generate_forecast("P1", "S1", normalize_usage_history(records))

        assert forecast["forecast_method"] == FORECAST_METHOD_FALLBACK
        assert forecast["forecasted_daily_usage"] == pytest.approx(10.0)
        assert forecast["confidence"] == 0.5
        assert forecast["seasonality_factor"] == 1.0
        assert forecast["usage_variability"] == 0.0
        assert forecast["model_metrics"]["models_used"] == ["fallback"]
        assert_log_contains(forecast["logs"], "using trailing average fallback")

    def test_fallback_interval_and_metrics(self):
        forecast = generate_forecast("P1", "S1", normalize_usage_history(constant_usage("P1", "S1", 10)))

        assert forecast["next_7_days"] == [10.0] * 7
        assert forecast["next_30_days"] == [10.0] * 30
        assert forecast["confidence_interval"]["lower"] == pytest.approx([8.0] * 30)
        assert forecast["confidence_interval"]["upper"] == pytest.approx([12.0] * 30)
        assert forecast["model_metrics"]["rmse"] == pytest.approx(3.0)

    def test_no_history_forecasts_zero(self):
        forecast = generate_forecast("P1", "S1", normalize_usage_history([]))
        assert forecast["forecasted_daily_usage"] == 0.0
        assert forecast["forecast_method"] == FORECAST_METHOD_FALLBACK

    def test_fallback_applies_external_factors(self):
        usage = normalize_usage_history(constant_usage("P1", "S1", 10))
        factors = ExternalFactors(
            weather=WeatherConditions(precipitation=1.0, seasonal_event="storm"),
            promotions=[Promotion("P1", date(2024, 7, 1), date(2024, 7, 10), 20)],
            holidays=["christmas"],
        )
        forecast = generate_forecast("P1", "S1", usage, factors)

        assert forecast["forecasted_daily_usage"] == pytest.approx(10.0 * 1.8 * 1.2)
        assert len(forecast["external_adjustments"]) == 2


class TestEnsembleForecast:
    """Test the model ensemble path"""

    def test_forecast_shape(self, sample_usage):
        forecast = generate_forecast("P1", "S1", sample_usage)

        for key in FORECAST_KEYS:
            assert key in forecast
        assert forecast["forecast_method"] == FORECAST_METHOD_ENSEMBLE
        assert len(forecast["next_7_days"]) == 7
        assert len(forecast["next_30_days"]) == 30
        assert len(forecast["confidence_interval"]["lower"]) == 30
        assert len(forecast["confidence_interval"]["upper"]) == 30
        assert forecast["next_7_days"] == forecast["next_30_days"][:7]

    def test_forecast_values_are_sane(self, sample_usage):
        forecast = generate_forecast("P1", "S1", sample_usage)

        assert 0.1 <= forecast["confidence"] <= 1.0
        assert forecast["forecasted_daily_usage"] > 0
        assert all(v >= 0 for v in forecast["next_30_days"])
        lower = forecast["confidence_interval"]["lower"]
        upper = forecast["confidence_interval"]["upper"]
        assert all(lo >= 0 for lo in lower)
        assert all(lo <= v <= up for lo, v, up in zip(lower, forecast["next_30_days"], upper))
        assert forecast["usage_variability"] >= 0

    def test_forecast_near_recent_level(self, sample_usage):
        forecast = generate_forecast("P1", "S1", sample_usage)
        mean_usage = sample_usage["quantity_used"].mean()
        assert abs(np.mean(forecast["next_30_days"]) - mean_usage) < mean_usage * 0.5

    def test_backtest_metrics_present(self, sample_usage):
        metrics = generate_forecast("P1", "S1", sample_usage)["model_metrics"]

        assert metrics["mape"] is not None and metrics["mape"] >= 0
        assert metrics["rmse"] is not None and metrics["rmse"] >= 0
        assert 0 <= metrics["accuracy"] <= 1
        assert set(metrics["models_used"]) <= set(MODEL_NAMES)
        assert "exponential_smoothing" in metrics["models_used"]

    def test_idempotent(self, sample_usage):
        """Same history and factors always produce the same forecast"""
        factors = ExternalFactors(weather=WeatherConditions(temperature=90))
        cache = SeasonalPatternCache()

        first = generate_forecast("P1", "S1", sample_usage, factors, cache)
        second = generate_forecast("P1", "S1", sample_usage, factors, cache)
        third = generate_forecast("P1", "S1", sample_usage, factors)

        assert first == second
        assert first == third

    def test_parallel_matches_sequential(self, sample_usage):
        sequential = generate_forecast("P1", "S1", sample_usage)
        parallel = generate_forecast("P1", "S1", sample_usage, use_parallel=True)
        assert sequential["next_30_days"] == pytest.approx(parallel["next_30_days"])

    def test_external_factors_scale_ensemble(self, sample_usage):
        base = generate_forecast("P1", "S1", sample_usage)
        event = StoreEvent("grand_opening", 1.5, date(2024, 7, 5), date(2024, 7, 6))
        boosted = generate_forecast("P1", "S1", sample_usage, ExternalFactors(events=[event]))

        assert boosted["forecasted_daily_usage"] == pytest.approx(base["forecasted_daily_usage"] * 1.5)
        assert boosted["external_adjustments"] == ["event 'grand_opening' x1.50"]


class TestEnsembleCombination:
    """Test per-horizon model combination"""

    def test_weighted_average_and_agreement(self):
        outputs = {name: np.full(3, 10.0) for name in MODEL_NAMES}
        result = ensemble_forecasts(outputs)

        assert result["values"].tolist() == pytest.approx([10.0, 10.0, 10.0])
        assert result["confidence"] == 1.0
        assert result["lower"].tolist() == pytest.approx(result["upper"].tolist())

    def test_nan_horizons_excluded(self):
        outputs = {
            "exponential_smoothing": np.array([np.nan, 20.0]),
            "moving_average": np.array([10.0, np.nan]),
        }
        result = ensemble_forecasts(outputs)

        assert result["values"].tolist() == pytest.approx([10.0, 20.0])
        assert sorted(result["models_used"]) == ["exponential_smoothing", "moving_average"]

    def test_missing_horizon_carries_previous_day(self):
        outputs = {"moving_average": np.array([10.0, np.nan, np.nan])}
        assert ensemble_forecasts(outputs)["values"].tolist() == pytest.approx([10.0, 10.0, 10.0])

    def test_no_day_zero_prediction(self):
        assert ensemble_forecasts({"moving_average": np.array([np.nan, 5.0])}) is None
        assert ensemble_forecasts({}) is None

    def test_disagreement_lowers_confidence(self):
        outputs = {
            "exponential_smoothing": np.array([5.0]),
            "seasonal_decomposition": np.array([15.0]),
        }
        result = ensemble_forecasts(outputs)
        # mean 10, std 5
        assert result["confidence"] == pytest.approx(0.5)
        assert result["values"][0] == pytest.approx((5.0 * 0.3 + 15.0 * 0.4) / 0.7)

    def test_negative_values_clamped(self):
        result = ensemble_forecasts({"linear_regression": np.array([-4.0])})
        assert result["values"][0] == 0.0


class TestFeatures:
    """Test regression feature construction"""

    def test_future_frame(self):
        factors = ExternalFactors(holidays=["2024-07-04"],
                                  promotions=[Promotion(None, date(2024, 7, 1), date(2024, 7, 2), 10)])
        frame = build_future_frame(pd.Timestamp("2024-07-01"), 5, pd.Timestamp("2024-06-01"), "P1", factors)

        assert frame["day_index"].tolist() == [30.0, 31.0, 32.0, 33.0, 34.0]
        assert frame["is_holiday"].tolist() == [False, False, False, True, False]
        assert frame["is_promotion"].tolist() == [True, True, False, False, False]

    def test_feature_matrix_shape(self):
        frame = build_future_frame(pd.Timestamp("2024-07-01"), 10, pd.Timestamp("2024-06-01"))
        assert build_feature_matrix(frame).shape == (10, 12)


class TestExternalFactorMultiplier:
    """Test the external factor adjustment"""

    def test_no_factors(self):
        assert calculate_external_factor_multiplier("P1", AS_OF, 30) == (1.0, [])

    def test_promotion_outside_window_ignored(self):
        factors = ExternalFactors(promotions=[Promotion("P1", date(2024, 1, 1), date(2024, 1, 31), 50)])
        multiplier, applied = calculate_external_factor_multiplier("P1", AS_OF, 30, factors)
        assert multiplier == 1.0
        assert applied == []

    def test_holiday_tags_use_detected_effects(self):
        factors = ExternalFactors(holidays=["holiday", "2024-07-04"])
        multiplier, applied = calculate_external_factor_multiplier("P1", AS_OF, 30, factors, {"holiday": 1.4})
        assert multiplier == pytest.approx(1.4)
        assert len(applied) == 1

    def test_factors_compound(self):
        factors = ExternalFactors(
            promotions=[Promotion(None, date(2024, 7, 1), date(2024, 7, 3), 10)],
            events=[StoreEvent("renovation", 0.5, date(2024, 7, 20), date(2024, 8, 20))],
        )
        multiplier, _ = calculate_external_factor_multiplier("P1", pd.Timestamp("2024-07-01"), 30, factors)
        assert multiplier == pytest.approx(1.1 * 0.5)


class TestAccuracyMetrics:
    """Test MAPE and backtesting"""

    def test_calculate_mape(self):
        assert calculate_mape(100, 90) == pytest.approx(10.0)
        assert calculate_mape(0, 0) == 0.0
        assert calculate_mape(0, 5) == 100.0

    def test_backtest_requires_enough_history(self):
        usage = generate_sample_usage(["P1"], ["S1"], days=36, as_of=AS_OF)
        assert backtest_forecast(build_time_series(usage)) is None

    def test_backtest_on_constant_series(self):
        usage = normalize_usage_history(constant_usage("P1", "S1", 8, days=60))
        metrics = backtest_forecast(build_time_series(usage))
        assert metrics["mape"] >= 0
        assert metrics["accuracy"] == pytest.approx(max(0.0, 1 - metrics["mape"]))


class TestForecastSummary:
    """Test run-level forecast quality metrics"""

    def test_empty(self):
        assert summarize_forecast_metrics([])["forecasts"] == 0

    def test_mixed_methods(self, sample_usage):
        forecasts = [
            generate_forecast("P1", "S1", sample_usage),
            generate_forecast("P1", "S1", normalize_usage_history(constant_usage("P1", "S1", 3))),
        ]
        summary = summarize_forecast_metrics(forecasts)

        assert summary["forecasts"] == 2
        assert summary["ensemble_share"] == 0.5
        assert summary["average_confidence"] == pytest.approx((forecasts[0]["confidence"] + 0.5) / 2)
        assert summary["average_mape"] == pytest.approx(forecasts[0]["model_metrics"]["mape"])
