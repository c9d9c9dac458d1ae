"""
Stability Analyzer

Turns a candidate series into a SeriesProfile: interval statistics,
periodicity, amount statistics and the price trend flag.

CRITICAL: analyze_series() is a pure function of the series and the
settings. The same series always yields the same profile, and the
profile fingerprint the classification cache relies on depends on it.
"""

import statistics
from decimal import Decimal
from typing import Iterable, Optional

from recurwatch.config.settings import DetectionSettings
from recurwatch.models.transaction import (
    CANONICAL_PERIOD_DAYS,
    CandidateSeries,
    Periodicity,
    SeriesProfile,
)


CENTS = Decimal("0.01")


def classify_periodicity(median_interval: Optional[float], tolerance: float) -> Periodicity:
    """
    Nearest canonical period by relative distance, if within tolerance.

    Outside every band the series is IRREGULAR.
    """
    if median_interval is None or median_interval <= 0:
        return Periodicity.IRREGULAR

    best = min(
        CANONICAL_PERIOD_DAYS.items(),
        key=lambda item: abs(median_interval - item[1]) / item[1],
    )
    periodicity, days = best
    if abs(median_interval - days) / days <= tolerance:
        return periodicity
    return Periodicity.IRREGULAR


def is_increasing_trend(amounts: list[Decimal], threshold: float) -> bool:
    """
    Last three amounts never drop, and the last beats the first of them
    by more than the threshold.
    """
    if len(amounts) < 3:
        return False
    window = amounts[-3:]
    if any(later < earlier for earlier, later in zip(window, window[1:])):
        return False
    return window[-1] > window[0] * (Decimal(1) + Decimal(str(threshold)))


def analyze_series(series: CandidateSeries, settings: DetectionSettings) -> SeriesProfile:
    """
    Compute the profile of one series.

    Series shorter than settings.min_occurrences still get a profile,
    with IRREGULAR periodicity, and are never eligible.
    """
    if len(series) == 0:
        raise ValueError(f"Series {series.merchant_key} has no transactions")

    dates = series.dates
    amounts = series.amounts
    count = len(dates)

    # Interval statistics
    intervals = [(later - earlier).days for earlier, later in zip(dates, dates[1:])]
    median_interval: Optional[float] = None
    interval_cv: Optional[float] = None
    consistency = 0.0

    if intervals:
        median_interval = float(statistics.median(intervals))
        mean = statistics.fmean(intervals)
        interval_cv = statistics.pstdev(intervals) / mean if mean > 0 else 0.0
        band = settings.interval_tolerance * median_interval
        inside = sum(1 for i in intervals if abs(i - median_interval) <= band)
        consistency = inside / len(intervals)

    if count >= settings.min_occurrences:
        periodicity = classify_periodicity(median_interval, settings.interval_tolerance)
    else:
        periodicity = Periodicity.IRREGULAR

    # Amount statistics
    median_amount = Decimal(statistics.median(amounts)).quantize(CENTS)
    if median_amount > 0:
        deviation = float(max(abs(a - median_amount) for a in amounts) / median_amount)
    else:
        deviation = 0.0

    eligible = (
        count >= settings.min_occurrences
        and periodicity != Periodicity.IRREGULAR
        and consistency >= settings.interval_consistency
    )

    return SeriesProfile(
        merchant_key=series.merchant_key,
        account_id=series.account_id,
        occurrence_count=count,
        first_seen=dates[0],
        last_seen=dates[-1],
        median_interval_days=median_interval,
        interval_cv=interval_cv,
        interval_consistency=consistency,
        periodicity=periodicity,
        median_amount=median_amount,
        amount_deviation=deviation,
        amount_stable=deviation <= settings.amount_tolerance,
        amounts=tuple(amounts),
        trend_increasing=is_increasing_trend(amounts, settings.price_increase_threshold),
        eligible=eligible,
    )


def analyze_all(
    series_list: Iterable[CandidateSeries],
    settings: DetectionSettings,
) -> list[SeriesProfile]:
    """Profile every series, preserving order."""
    return [analyze_series(series, settings) for series in series_list]
