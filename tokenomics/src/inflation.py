"""Inflation statistics over emission and supply time series.

All functions are pure. Emission series are windowed over the last N
*complete* days: a record for the current calendar day is still
accumulating and is skipped. Rates are annualized percentages and may be
negative; callers decide how to present them.

.. code-block:: python

    >>> series = [
    ...     EmissionRecord(date(2025, 6, 2), burnt_amount=100),
    ...     EmissionRecord(date(2025, 6, 1), burnt_amount=50),
    ... ]
    >>> stats = compute_inflation(
    ...     series, SupplySnapshot(1000, 2000), 1, today=date(2025, 6, 2)
    ... )
    >>> stats.absolute_issuance, stats.inflation_rate_circulating
    (50.0, 1825.0)
"""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Callable, Sequence

from .records import (
    EmissionRecord,
    InflationStats,
    SupplyGrowth,
    SupplyHistoryPoint,
    SupplySnapshot,
)

DAYS_PER_YEAR = 365

BERACHAIN_GENESIS = datetime(2025, 1, 20, 14, 0, tzinfo=timezone.utc)


def annualized_rate(amount: float, supply: float, days: float) -> float:
    """Annualize an amount issued over ``days`` relative to ``supply``.

    :param amount: Amount issued in the window.
    :param supply: Reference supply.
    :param days: Window length in days.
    :returns: Rate in percent, or 0.0 if supply or days is unusable.
    """
    if not math.isfinite(supply) or supply == 0 or days <= 0:
        return 0.0
    return (amount * (DAYS_PER_YEAR / days) / supply) * 100


def last_complete_days(
    series: Sequence[EmissionRecord],
    days: int,
    today: date | None = None,
) -> list[EmissionRecord]:
    """Take up to ``days`` most recent complete records.

    :param series: Emission records in any order.
    :param days: Window length.
    :param today: Current UTC day (default: today).
    :returns: Records sorted descending by period.
    """
    if not series or days <= 0:
        return []
    today = today or datetime.now(timezone.utc).date()
    ordered = sorted(series, key=lambda r: r.period, reverse=True)
    start = 1 if ordered[0].period == today else 0
    return ordered[start:start + days]


def _windowed_stats(
    series: Sequence[EmissionRecord],
    supply: SupplySnapshot,
    window_days: int,
    issuance: Callable[[EmissionRecord], float],
    today: date | None,
) -> InflationStats | None:
    if window_days < 1:
        raise ValueError("window_days must be at least 1")
    window = last_complete_days(series, window_days, today)
    if not window:
        return None
    absolute = sum(issuance(record) for record in window)
    return InflationStats(
        window_days=window_days,
        absolute_issuance=absolute,
        inflation_rate_circulating=annualized_rate(
            absolute, supply.circulating_supply, window_days
        ),
        inflation_rate_total=annualized_rate(absolute, supply.total_supply, window_days),
    )


def compute_inflation(
    series: Sequence[EmissionRecord],
    supply: SupplySnapshot,
    window_days: int,
    today: date | None = None,
) -> InflationStats | None:
    """Base-token inflation from burns of the bridged token.

    Each unit burnt is issued as new base-token supply, so issuance is the
    sum of ``|burnt_amount|`` over the window.

    :param series: Emission records.
    :param supply: Base-token supply.
    :param window_days: Number of complete days to include.
    :param today: Current UTC day (default: today).
    :returns: InflationStats, or None if the window is empty.
    :raises ValueError: If window_days is less than 1.
    """
    return _windowed_stats(
        series, supply, window_days, lambda r: abs(r.burnt_amount), today
    )


def compute_emission_inflation(
    series: Sequence[EmissionRecord],
    supply: SupplySnapshot,
    window_days: int,
    today: date | None = None,
) -> InflationStats | None:
    """Secondary-token inflation from its own daily emission.

    :param series: Emission records.
    :param supply: Secondary-token supply.
    :param window_days: Number of complete days to include.
    :param today: Current UTC day (default: today).
    :returns: InflationStats, or None if the window is empty.
    :raises ValueError: If window_days is less than 1.
    """
    return _windowed_stats(series, supply, window_days, lambda r: r.daily_emission, today)


def compute_combined_inflation(
    series: Sequence[EmissionRecord],
    base_supply: SupplySnapshot,
    secondary_supply: SupplySnapshot,
    window_days: int,
    today: date | None = None,
) -> InflationStats | None:
    """Combined inflation of both tokens.

    Issuance is base-token issuance from burns plus the secondary token's
    daily emission; the reference supply is the sum of both supplies.

    :param series: Emission records.
    :param base_supply: Base-token supply.
    :param secondary_supply: Secondary-token supply.
    :param window_days: Number of complete days to include.
    :param today: Current UTC day (default: today).
    :returns: InflationStats, or None if the window is empty.
    :raises ValueError: If window_days is less than 1.
    """
    return _windowed_stats(
        series,
        base_supply + secondary_supply,
        window_days,
        lambda r: abs(r.burnt_amount) + r.daily_emission,
        today,
    )


def _growth(start: SupplyHistoryPoint, end: SupplyHistoryPoint) -> SupplyGrowth | None:
    elapsed = (end.date - start.date).days
    if elapsed < 1 or not math.isfinite(start.supply) or start.supply <= 0:
        return None
    rate = ((end.supply - start.supply) * (DAYS_PER_YEAR / elapsed) / start.supply) * 100
    return SupplyGrowth(rate=rate, actual_days=float(elapsed))


def compute_supply_growth(
    history: Sequence[SupplyHistoryPoint], days: int
) -> SupplyGrowth | None:
    """Annualized supply growth over roughly the last ``days`` days.

    The start point is the most recent point at least ``days`` before the
    latest point; the rate is annualized by the days actually elapsed.

    :param history: Supply history in any order.
    :param days: Minimum look-back in days.
    :returns: SupplyGrowth, or None with fewer than 2 points or no point
        far enough back.
    """
    if len(history) < 2:
        return None
    ordered = sorted(history, key=lambda p: p.date)
    latest = ordered[-1]
    for point in reversed(ordered[:-1]):
        if (latest.date - point.date).days >= days:
            return _growth(point, latest)
    return None


def compute_genesis_growth(
    history: Sequence[SupplyHistoryPoint],
    genesis: datetime = BERACHAIN_GENESIS,
) -> SupplyGrowth | None:
    """Annualized supply growth since a fixed genesis instant.

    Starts at the first point whose day (at 00:00 UTC) is on or after
    ``genesis`` and ends at the latest point.

    :param history: Supply history in any order.
    :param genesis: Genesis instant (timezone-aware).
    :returns: SupplyGrowth, or None if fewer than 2 points remain.
    """
    ordered = sorted(history, key=lambda p: p.date)
    eligible = [
        p
        for p in ordered
        if datetime(p.date.year, p.date.month, p.date.day, tzinfo=timezone.utc) >= genesis
    ]
    if len(eligible) < 2:
        return None
    return _growth(eligible[0], eligible[-1])
