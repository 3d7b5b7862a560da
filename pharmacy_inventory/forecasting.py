"""
Demand forecasting statistics for pharmacy inventory.

Trend detection (OLS), EWMA smoothing, a day-of-week aware short-horizon
forecast, Wilson safety stock, weekly/monthly seasonality detection and
stockout-date prediction. Everything here is pure: store reads happen in the
caller, and "today" is a parameter.

Sparse history never raises. Results carry ``insufficient_data`` and a
confidence label instead.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import stats

from pharmacy_inventory.database.models import Transaction, TransactionAction

logger = logging.getLogger(__name__)

# Configuration constants
EWMA_ALPHA = 0.3
FORECAST_HISTORY_DAYS = 30
DEFAULT_FORECAST_DAYS = 7
TREND_FACTOR_SENSITIVITY = 0.1
TREND_FACTOR_BOUNDS = (0.5, 1.5)
CONFIDENCE_BAND = (0.8, 1.2)
WARNING_COVERAGE_DAYS = 2

SIGNIFICANT_R_SQUARED = 0.5
SIGNIFICANT_TREND_PCT = 5.0

Z_SCORES = {
    0.90: 1.28,
    0.95: 1.65,
    0.98: 2.05,
    0.99: 2.33,
}
DEFAULT_Z_SCORE = 1.65
# Coefficient of variation assumed when no demand history is available
DEFAULT_DEMAND_CV = 0.2
MIN_STD_DEV_OBSERVATIONS = 7

SEASONALITY_HISTORY_DAYS = 90
MIN_SEASONALITY_DAYS = 14
WEEKLY_SEASONALITY_THRESHOLD = 0.6
MONTHLY_SEASONALITY_THRESHOLD = 0.5
WEEKLY_PEAK_BAND = (0.9, 1.1)
MONTHLY_PEAK_BAND = (0.85, 1.15)

MIN_PREDICTION_TRANSACTIONS = 3
MAX_SIMULATION_DAYS = 365
MEDIUM_CONFIDENCE_OBSERVATIONS = 30
HIGH_CONFIDENCE_R_SQUARED = 0.7

# Monday first, matching date.weekday()
DAY_NAMES = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')
DAY_OF_WEEK_FACTORS = {
    'Monday': 1.15,
    'Tuesday': 1.1,
    'Wednesday': 1.05,
    'Thursday': 1.0,
    'Friday': 0.95,
    'Saturday': 0.8,
    'Sunday': 0.75,
}
PERIOD_NAMES = ('Early period', 'Mid period', 'Late period')


class Confidence(Enum):
    """Confidence label attached to a prediction."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class ForecastStatus(Enum):
    """Coverage status of a forecast horizon."""
    ADEQUATE = "adequate"
    WARNING = "warning"
    CRITICAL = "critical"


class SeasonalPattern(Enum):
    """Detected seasonality pattern."""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    NONE = "none"


@dataclass
class TrendResult:
    """Ordinary least squares fit of usage against day index."""
    slope: float
    intercept: float
    r_squared: float
    trend_pct: float
    has_significant_trend: bool
    observations: int
    insufficient_data: bool = False

    @property
    def direction(self) -> str:
        if not self.has_significant_trend:
            return "STABLE"
        return "INCREASING" if self.slope > 0 else "DECREASING"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'slope': self.slope,
            'intercept': self.intercept,
            'r_squared': self.r_squared,
            'trend_pct': self.trend_pct,
            'has_significant_trend': self.has_significant_trend,
            'direction': self.direction,
            'observations': self.observations,
            'insufficient_data': self.insufficient_data
        }


@dataclass
class ForecastPoint:
    """Forecast for a single future day."""
    date: date
    day: str
    predicted: float
    lower: float
    upper: float
    remaining_stock: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date.isoformat(),
            'day': self.day,
            'predicted': self.predicted,
            'lower': self.lower,
            'upper': self.upper,
            'remaining_stock': self.remaining_stock
        }


@dataclass
class ForecastResult:
    """Short-horizon demand forecast for one drug."""
    drug_name: str
    current_stock: int
    avg_daily_use: float
    trend_factor: float
    forecast_period_days: int
    forecasts: List[ForecastPoint]
    total_forecast: float
    projected_gap: float
    status: ForecastStatus
    recommendation: str
    insufficient_data: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'drug_name': self.drug_name,
            'current_stock': self.current_stock,
            'avg_daily_use': self.avg_daily_use,
            'trend_factor': self.trend_factor,
            'forecast_period_days': self.forecast_period_days,
            'forecasts': [point.to_dict() for point in self.forecasts],
            'total_forecast': self.total_forecast,
            'projected_gap': self.projected_gap,
            'status': self.status.value,
            'recommendation': self.recommendation,
            'insufficient_data': self.insufficient_data
        }


@dataclass
class SeasonalityResult:
    """Outcome of weekly/monthly seasonality detection."""
    has_seasonality: bool
    pattern: SeasonalPattern
    peak_periods: List[str] = field(default_factory=list)
    low_periods: List[str] = field(default_factory=list)
    seasonality_score: float = 0.0
    weekly_score: float = 0.0
    monthly_score: float = 0.0
    insufficient_data: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'has_seasonality': self.has_seasonality,
            'pattern': self.pattern.value,
            'peak_periods': self.peak_periods,
            'low_periods': self.low_periods,
            'seasonality_score': self.seasonality_score,
            'weekly_score': self.weekly_score,
            'monthly_score': self.monthly_score,
            'insufficient_data': self.insufficient_data
        }


@dataclass
class StockoutPrediction:
    """Predicted date on which stock runs out."""
    stockout_date: Optional[date]
    days_until_stockout: Optional[int]
    confidence: Confidence
    method: str
    avg_daily_usage: float = 0.0
    observations: int = 0
    trend: Optional[TrendResult] = None
    insufficient_data: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'stockout_date': self.stockout_date.isoformat() if self.stockout_date else None,
            'days_until_stockout': self.days_until_stockout,
            'confidence': self.confidence.value,
            'method': self.method,
            'avg_daily_usage': self.avg_daily_usage,
            'observations': self.observations,
            'trend': self.trend.to_dict() if self.trend else None,
            'insufficient_data': self.insufficient_data
        }


# --- Helpers ---

def _as_date(value: Optional[Union[date, datetime]]) -> date:
    if value is None:
        return date.today()
    if isinstance(value, datetime):
        return value.date()
    return value


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))


def _coefficient_of_variation(values: np.ndarray) -> float:
    mean = float(np.mean(values))
    return float(np.std(values)) / (mean or 1.0)


def usage_transactions(transactions: Iterable[Transaction]) -> List[Transaction]:
    """USE transactions in chronological order."""
    return sorted(
        (txn for txn in transactions if txn.action == TransactionAction.USE),
        key=lambda txn: txn.timestamp
    )


def day_of_week_factor(day: date) -> float:
    return DAY_OF_WEEK_FACTORS.get(DAY_NAMES[day.weekday()], 1.0)


# --- Trend ---

def _flat_trend(observations: int) -> TrendResult:
    return TrendResult(
        slope=0.0,
        intercept=0.0,
        r_squared=0.0,
        trend_pct=0.0,
        has_significant_trend=False,
        observations=observations,
        insufficient_data=True
    )


def fit_trend(points: Sequence[Tuple[float, float]]) -> TrendResult:
    """
    Fit ``value = slope * day + intercept`` by ordinary least squares.

    A trend is significant when R² > 0.5 and the slope is more than 5% of the
    mean value per day.

    Args:
        points: ``(day_index, usage_value)`` pairs

    Returns:
        TrendResult; flagged ``insufficient_data`` with fewer than two
        distinct day indices
    """
    if len(points) < 2:
        return _flat_trend(len(points))

    x = np.array([p[0] for p in points], dtype=float)
    y = np.array([p[1] for p in points], dtype=float)
    if np.unique(x).size < 2:
        return _flat_trend(len(points))

    fit = stats.linregress(x, y)
    mean_y = float(np.mean(y))
    ss_total = float(np.sum((y - mean_y) ** 2))
    r_squared = float(fit.rvalue ** 2) if ss_total > 0 else 0.0
    slope = float(fit.slope)
    trend_pct = (slope / mean_y) * 100 if mean_y > 0 else 0.0

    return TrendResult(
        slope=slope,
        intercept=float(fit.intercept),
        r_squared=r_squared,
        trend_pct=trend_pct,
        has_significant_trend=r_squared > SIGNIFICANT_R_SQUARED and abs(trend_pct) > SIGNIFICANT_TREND_PCT,
        observations=len(points)
    )


def calculate_linear_trend(values: Sequence[float]) -> TrendResult:
    """Trend over a plain series indexed 0..n-1."""
    return fit_trend([(i, float(v)) for i, v in enumerate(values)])


# --- Smoothing ---

def calculate_ewma(data: Sequence[float], alpha: float = EWMA_ALPHA) -> List[float]:
    """Exponentially weighted moving average, seeded with the first value."""
    if len(data) == 0:
        return []
    ewma = [float(data[0])]
    for value in data[1:]:
        ewma.append(alpha * float(value) + (1 - alpha) * ewma[-1])
    return ewma


# --- Usage extraction ---

def extract_daily_usage(transactions: Iterable[Transaction], days: int = FORECAST_HISTORY_DAYS,
                        today: Optional[Union[date, datetime]] = None) -> pd.Series:
    """
    Daily dispensed quantity over the last ``days`` calendar days.

    The window ends on ``today`` (inclusive), is ordered oldest first and has
    a zero for every day without USE transactions.
    """
    today = _as_date(today)
    index = pd.date_range(end=pd.Timestamp(today), periods=days, freq="D")

    usage = [(txn.timestamp.date(), txn.quantity) for txn in transactions
             if txn.action == TransactionAction.USE]
    if not usage:
        return pd.Series(0.0, index=index)

    frame = pd.DataFrame(usage, columns=["date", "qty"])
    frame["date"] = pd.to_datetime(frame["date"])
    daily = frame.groupby("date")["qty"].sum()
    return daily.reindex(index, fill_value=0).astype(float)


def average_daily_usage(transactions: Iterable[Transaction], drug_id: str,
                        days: int = FORECAST_HISTORY_DAYS,
                        today: Optional[Union[date, datetime]] = None) -> float:
    """Units used per day for one drug over the trailing window."""
    drug_transactions = [txn for txn in transactions if txn.drug_id == drug_id]
    daily = extract_daily_usage(drug_transactions, days, today)
    return float(daily.sum()) / days


# --- Forecast ---

def generate_forecast(
    drug_name: str,
    current_stock: int,
    avg_daily_use: float,
    transactions: Iterable[Transaction],
    forecast_days: int = DEFAULT_FORECAST_DAYS,
    today: Optional[Union[date, datetime]] = None
) -> ForecastResult:
    """
    Forecast daily demand for the next ``forecast_days`` days.

    predicted = EWMA base demand x day-of-week factor x trend factor, where the
    trend factor is clamped to [0.5, 1.5]. The confidence band is ±20%.

    Args:
        drug_name: Display name of the drug
        current_stock: Units on hand across the forecast scope
        avg_daily_use: Recorded average, used as base demand without history
        transactions: Transactions for this drug (any window; the last 30
            days are used)
        forecast_days: Horizon length
        today: Reference date; forecasts start the day after

    Returns:
        ForecastResult
    """
    today = _as_date(today)
    daily = extract_daily_usage(transactions, FORECAST_HISTORY_DAYS, today)
    values = daily.to_numpy()
    insufficient_data = not bool(np.any(values > 0))

    trend = calculate_linear_trend(values)
    trend_factor = _clamp(1 + trend.slope * TREND_FACTOR_SENSITIVITY, TREND_FACTOR_BOUNDS)

    ewma = calculate_ewma(values)
    base_demand = ewma[-1] if ewma and ewma[-1] > 0 else float(avg_daily_use)

    forecasts = []
    remaining_stock = float(current_stock)
    for offset in range(1, forecast_days + 1):
        forecast_date = today + timedelta(days=offset)
        predicted = base_demand * day_of_week_factor(forecast_date) * trend_factor
        remaining_stock -= predicted
        forecasts.append(ForecastPoint(
            date=forecast_date,
            day=DAY_NAMES[forecast_date.weekday()],
            predicted=predicted,
            lower=predicted * CONFIDENCE_BAND[0],
            upper=predicted * CONFIDENCE_BAND[1],
            remaining_stock=max(0.0, remaining_stock)
        ))

    total_forecast = sum(point.predicted for point in forecasts)
    projected_gap = current_stock - total_forecast

    if projected_gap < 0:
        status = ForecastStatus.CRITICAL
        recommendation = f"Urgent: Order {math.ceil(abs(projected_gap))} units immediately to avoid stockout"
    elif projected_gap < avg_daily_use * WARNING_COVERAGE_DAYS:
        status = ForecastStatus.WARNING
        recommendation = (
            f"Order {math.ceil(avg_daily_use * DEFAULT_FORECAST_DAYS - projected_gap)} units "
            f"to maintain 7-day coverage"
        )
    else:
        status = ForecastStatus.ADEQUATE
        if avg_daily_use > 0:
            recommendation = f"Stock adequate for {math.floor(current_stock / avg_daily_use)} days"
        else:
            recommendation = "Stock adequate; no recorded daily use"

    if insufficient_data:
        logger.debug(f"No usage history for {drug_name}; forecasting from recorded average {avg_daily_use}")

    return ForecastResult(
        drug_name=drug_name,
        current_stock=current_stock,
        avg_daily_use=base_demand,
        trend_factor=trend_factor,
        forecast_period_days=forecast_days,
        forecasts=forecasts,
        total_forecast=total_forecast,
        projected_gap=projected_gap,
        status=status,
        recommendation=recommendation,
        insufficient_data=insufficient_data
    )


# --- Safety stock ---

def z_score_for(service_level: float) -> float:
    return Z_SCORES.get(round(service_level, 2), DEFAULT_Z_SCORE)


def estimate_demand_std_dev(daily_usage: Sequence[float]) -> Optional[float]:
    """Population standard deviation of daily usage, or None if too short."""
    if len(daily_usage) < MIN_STD_DEV_OBSERVATIONS:
        return None
    return float(np.std(np.asarray(daily_usage, dtype=float)))


def calculate_safety_stock(
    avg_daily_use: float,
    lead_time_days: int,
    service_level: float = 0.95,
    demand_std_dev: Optional[float] = None
) -> int:
    """
    Wilson safety stock: ceil(Z x σ_demand x sqrt(lead time)).

    σ defaults to 20% of average daily use when no history-based estimate is
    supplied. Unknown service levels use Z = 1.65.
    """
    z_score = z_score_for(service_level)
    std_dev = demand_std_dev if demand_std_dev is not None else avg_daily_use * DEFAULT_DEMAND_CV
    safety_stock = z_score * std_dev * math.sqrt(lead_time_days)
    # round() drops float noise such as 9.000000000000002 before the ceiling
    return max(0, math.ceil(round(safety_stock, 9)))


# --- Seasonality ---

def _band_labels(averages: np.ndarray, labels: Sequence[str],
                 band: Tuple[float, float]) -> Tuple[List[str], List[str]]:
    overall = float(np.mean(averages))
    peaks = [label for label, avg in zip(labels, averages) if avg > overall * band[1]]
    lows = [label for label, avg in zip(labels, averages) if avg < overall * band[0]]
    return peaks, lows


def _weekly_pattern(daily: pd.Series) -> Tuple[float, List[str], List[str]]:
    by_weekday = daily.groupby(daily.index.dayofweek).mean()
    averages = by_weekday.reindex(range(7), fill_value=0.0).to_numpy(dtype=float)
    score = _coefficient_of_variation(averages)
    peaks, lows = _band_labels(averages, DAY_NAMES, WEEKLY_PEAK_BAND)
    return score, peaks, lows


def _monthly_pattern(daily: pd.Series) -> Tuple[float, List[str], List[str]]:
    values = daily.to_numpy(dtype=float)
    size = len(values) // 3
    periods = (values[:size], values[size:size * 2], values[size * 2:])
    averages = np.array([float(np.mean(p)) if len(p) else 0.0 for p in periods])
    score = _coefficient_of_variation(averages)
    peaks, lows = _band_labels(averages, PERIOD_NAMES, MONTHLY_PEAK_BAND)
    return score, peaks, lows


def detect_seasonal_patterns(
    transactions: Iterable[Transaction],
    period_days: int = SEASONALITY_HISTORY_DAYS,
    today: Optional[Union[date, datetime]] = None
) -> SeasonalityResult:
    """
    Detect weekly or monthly usage seasonality.

    Weekly: coefficient of variation across the seven weekday averages above
    0.6. Monthly: coefficient of variation across the early/mid/late thirds of
    the window above 0.5. Weekly is checked first and only one pattern is
    reported.
    """
    daily = extract_daily_usage(transactions, period_days, today)
    if period_days < MIN_SEASONALITY_DAYS or float(daily.sum()) <= 0:
        return SeasonalityResult(
            has_seasonality=False,
            pattern=SeasonalPattern.NONE,
            insufficient_data=True
        )

    weekly_score, weekly_peaks, weekly_lows = _weekly_pattern(daily)
    monthly_score, monthly_peaks, monthly_lows = _monthly_pattern(daily)

    if weekly_score > WEEKLY_SEASONALITY_THRESHOLD:
        return SeasonalityResult(
            has_seasonality=True,
            pattern=SeasonalPattern.WEEKLY,
            peak_periods=weekly_peaks,
            low_periods=weekly_lows,
            seasonality_score=weekly_score,
            weekly_score=weekly_score,
            monthly_score=monthly_score
        )

    if monthly_score > MONTHLY_SEASONALITY_THRESHOLD:
        return SeasonalityResult(
            has_seasonality=True,
            pattern=SeasonalPattern.MONTHLY,
            peak_periods=monthly_peaks,
            low_periods=monthly_lows,
            seasonality_score=monthly_score,
            weekly_score=weekly_score,
            monthly_score=monthly_score
        )

    return SeasonalityResult(
        has_seasonality=False,
        pattern=SeasonalPattern.NONE,
        weekly_score=weekly_score,
        monthly_score=monthly_score
    )


# --- Stockout prediction ---

def predict_stockout_date(
    current_stock: int,
    transactions: Iterable[Transaction],
    avg_daily_use: Optional[float] = None,
    today: Optional[Union[date, datetime]] = None
) -> StockoutPrediction:
    """
    Predict when current stock runs out.

    With a significant upward usage trend the remaining stock is simulated day
    by day with usage growing by slope/30 per day (capped at 365 days).
    Otherwise stock is divided by the observed average daily usage.

    Args:
        current_stock: Units on hand
        transactions: Transaction history for the drug
        avg_daily_use: Recorded average, used when history is too short
        today: Reference date

    Returns:
        StockoutPrediction; ``stockout_date`` is None when no usage is known
    """
    today = _as_date(today)

    if current_stock <= 0:
        return StockoutPrediction(
            stockout_date=today,
            days_until_stockout=0,
            confidence=Confidence.HIGH,
            method="Already out of stock"
        )

    usage = usage_transactions(transactions)

    if len(usage) < MIN_PREDICTION_TRANSACTIONS:
        if avg_daily_use and avg_daily_use > 0:
            days = math.floor(current_stock / avg_daily_use)
            return StockoutPrediction(
                stockout_date=today + timedelta(days=days),
                days_until_stockout=days,
                confidence=Confidence.LOW,
                method="Recorded average daily use (insufficient history)",
                avg_daily_usage=float(avg_daily_use),
                observations=len(usage),
                insufficient_data=True
            )
        return StockoutPrediction(
            stockout_date=None,
            days_until_stockout=None,
            confidence=Confidence.LOW,
            method="Insufficient usage history",
            observations=len(usage),
            insufficient_data=True
        )

    quantities = [txn.quantity for txn in usage]
    span_days = (usage[-1].timestamp - usage[0].timestamp).total_seconds() / 86400
    avg_usage = sum(quantities) / max(span_days, 1.0)
    trend = calculate_linear_trend(quantities)

    if trend.has_significant_trend and trend.slope > 0:
        daily_trend = trend.slope / 30
        remaining = float(current_stock)
        day = 0
        while remaining > 0 and day < MAX_SIMULATION_DAYS:
            day += 1
            remaining -= avg_usage + daily_trend * day

        if trend.r_squared > HIGH_CONFIDENCE_R_SQUARED:
            confidence = Confidence.HIGH
        elif trend.r_squared > SIGNIFICANT_R_SQUARED:
            confidence = Confidence.MEDIUM
        else:
            confidence = Confidence.LOW

        return StockoutPrediction(
            stockout_date=today + timedelta(days=day),
            days_until_stockout=day,
            confidence=confidence,
            method="Linear regression with trend",
            avg_daily_usage=avg_usage,
            observations=len(usage),
            trend=trend
        )

    if avg_usage <= 0:
        return StockoutPrediction(
            stockout_date=None,
            days_until_stockout=None,
            confidence=Confidence.LOW,
            method="No consumption recorded",
            observations=len(usage),
            trend=trend
        )

    days = math.floor(current_stock / avg_usage)
    return StockoutPrediction(
        stockout_date=today + timedelta(days=days),
        days_until_stockout=days,
        confidence=Confidence.MEDIUM if len(usage) > MEDIUM_CONFIDENCE_OBSERVATIONS else Confidence.LOW,
        method="Average daily usage",
        avg_daily_usage=avg_usage,
        observations=len(usage),
        trend=trend
    )
