"""Typed records produced by provider adapters.

Upstream JSON is converted into these immutable records at the adapter
boundary. Conversion failures raise ParseError so the engine never operates
on loosely-typed payloads.

.. code-block:: python

    >>> record = EmissionRecord.from_row({"period": "2025-06-01", "burnt_amount": -50})
    >>> record.period
    datetime.date(2025, 6, 1)
    >>> record.burnt_amount
    -50.0
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any

from .errors import ParseError

logger = logging.getLogger(__name__)


def _to_float(value: Any, field_name: str, *, default: float | None = 0.0) -> float:
    """Convert a JSON number (or numeric string) to float.

    :param value: Raw value from the payload.
    :param field_name: Field name used in error messages.
    :param default: Value used when the field is missing or null. None makes
        the field mandatory.
    :returns: Parsed float.
    :raises ParseError: If the value is missing (and mandatory) or not numeric.
    """
    if value is None:
        if default is None:
            raise ParseError(f"Missing field '{field_name}'")
        return default
    if isinstance(value, bool):
        raise ParseError(f"Field '{field_name}' is not numeric: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Field '{field_name}' is not numeric: {value!r}") from e


def parse_day(value: Any) -> date:
    """Parse a day from an ISO date, datetime string or date object.

    Accepts "2025-06-01", "2025-06-01T00:00:00Z" and Dune's
    "2025-06-01 00:00:00.000 UTC".

    :param value: Raw period value.
    :returns: Calendar day.
    :raises ParseError: If the value cannot be parsed.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or len(value) < 10:
        raise ParseError(f"Invalid period: {value!r}")
    try:
        return date.fromisoformat(value[:10])
    except ValueError as e:
        raise ParseError(f"Invalid period: {value!r}") from e


@dataclass(frozen=True)
class EmissionRecord:
    """One day of emission data.

    :ivar period: Day the record covers.
    :ivar daily_emission: Secondary-token emission for the day.
    :ivar burnt_amount: Secondary-token burnt for the day. Burns are issued
        as new base-token supply.
    :ivar minted_amount: Amount minted for the day.
    :ivar total_burnt: Cumulative burnt amount.
    :ivar total_emission: Cumulative emission.
    :ivar avg_emission_7d: Trailing 7-day average emission.
    """

    period: date
    daily_emission: float = 0.0
    burnt_amount: float = 0.0
    minted_amount: float = 0.0
    total_burnt: float = 0.0
    total_emission: float = 0.0
    avg_emission_7d: float = 0.0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> EmissionRecord:
        """Build a record from a provider row.

        Missing numeric fields default to 0.

        :param row: Row dict with snake_case keys.
        :returns: New EmissionRecord.
        :raises ParseError: If the row is malformed.
        """
        if not isinstance(row, dict):
            raise ParseError(f"Emission row is not an object: {row!r}")
        return cls(
            period=parse_day(row.get("period")),
            daily_emission=_to_float(row.get("daily_emission"), "daily_emission"),
            burnt_amount=_to_float(row.get("burnt_amount"), "burnt_amount"),
            minted_amount=_to_float(row.get("minted_amount"), "minted_amount"),
            total_burnt=_to_float(row.get("total_burnt"), "total_burnt"),
            total_emission=_to_float(row.get("total_emission"), "total_emission"),
            avg_emission_7d=_to_float(row.get("avg_emission_7d"), "avg_emission_7d"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the row format used by the fallback store."""
        return {
            "period": self.period.isoformat(),
            "daily_emission": self.daily_emission,
            "burnt_amount": self.burnt_amount,
            "minted_amount": self.minted_amount,
            "total_burnt": self.total_burnt,
            "total_emission": self.total_emission,
            "avg_emission_7d": self.avg_emission_7d,
        }


def sort_series(records: list[EmissionRecord]) -> tuple[EmissionRecord, ...]:
    """Order records by period, most recent first.

    :param records: Records in any order.
    :returns: Immutable series sorted strictly descending by period.
    :raises ParseError: If two records share a period.
    """
    ordered = sorted(records, key=lambda r: r.period, reverse=True)
    for newer, older in zip(ordered, ordered[1:]):
        if newer.period == older.period:
            raise ParseError(f"Duplicate emission period {newer.period.isoformat()}")
    return tuple(ordered)


def parse_emission_rows(rows: Any) -> tuple[EmissionRecord, ...]:
    """Parse and sort a list of provider rows.

    :param rows: List of row dicts.
    :returns: Series sorted descending by period.
    :raises ParseError: If rows is not a list or any row is malformed.
    """
    if not isinstance(rows, list):
        raise ParseError(f"Expected a list of rows, got {type(rows).__name__}")
    return sort_series([EmissionRecord.from_row(row) for row in rows])


@dataclass(frozen=True)
class SupplySnapshot:
    """Circulating and total supply of one token.

    ``circulating_supply <= total_supply`` is a soft invariant: providers
    contradict it transiently, so violations are only logged.
    """

    circulating_supply: float
    total_supply: float

    @classmethod
    def from_payload(cls, data: Any, *, source: str = "") -> SupplySnapshot:
        """Build a snapshot from a payload with circulatingSupply/totalSupply.

        :param data: Decoded JSON object.
        :param source: Provider name used in log messages.
        :returns: New SupplySnapshot.
        :raises ParseError: If either figure is missing, non-finite or not positive.
        """
        if not isinstance(data, dict):
            raise ParseError(f"Supply payload is not an object: {data!r}")
        snapshot = cls(
            circulating_supply=_to_float(
                data.get("circulatingSupply"), "circulatingSupply", default=None
            ),
            total_supply=_to_float(data.get("totalSupply"), "totalSupply", default=None),
        )
        snapshot.validate(source=source)
        return snapshot

    def validate(self, *, source: str = "") -> None:
        """Check the hard and soft invariants.

        :param source: Provider name used in log messages.
        :raises ParseError: If a figure is non-finite or not positive.
        """
        for name, value in (
            ("circulatingSupply", self.circulating_supply),
            ("totalSupply", self.total_supply),
        ):
            if not math.isfinite(value) or value <= 0:
                raise ParseError(f"Invalid or missing {name}: {value!r}")
        if self.circulating_supply > self.total_supply:
            logger.warning(
                "[%s] circulating supply %.2f exceeds total supply %.2f",
                source or "supply",
                self.circulating_supply,
                self.total_supply,
            )

    def __add__(self, other: SupplySnapshot) -> SupplySnapshot:
        return SupplySnapshot(
            circulating_supply=self.circulating_supply + other.circulating_supply,
            total_supply=self.total_supply + other.total_supply,
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "circulatingSupply": self.circulating_supply,
            "totalSupply": self.total_supply,
        }


@dataclass(frozen=True)
class SupplyHistoryPoint:
    """Estimated supply on one day (market cap / price). Not authoritative."""

    date: date
    supply: float

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date.isoformat(), "supply": self.supply}


def supply_history_from_market_chart(data: Any) -> tuple[SupplyHistoryPoint, ...]:
    """Derive supply history from a market chart payload.

    The payload holds parallel ``prices`` and ``market_caps`` lists of
    ``[timestamp_ms, value]``. Points with a missing or zero price or market
    cap are skipped. When several samples fall on the same day the last one
    wins.

    :param data: Decoded market chart JSON.
    :returns: Points sorted ascending by date.
    :raises ParseError: If the payload structure is invalid.
    """
    if not isinstance(data, dict):
        raise ParseError(f"Market chart payload is not an object: {data!r}")
    prices = data.get("prices") or []
    market_caps = data.get("market_caps") or []
    if not isinstance(prices, list) or not isinstance(market_caps, list):
        raise ParseError("Market chart prices/market_caps must be lists")

    by_day: dict[date, float] = {}
    for index, sample in enumerate(prices):
        try:
            timestamp_ms, price = sample[0], sample[1]
            market_cap = market_caps[index][1] if index < len(market_caps) else None
        except (IndexError, TypeError) as e:
            raise ParseError(f"Malformed market chart sample at {index}: {sample!r}") from e
        if not price or not market_cap:
            continue
        try:
            day = datetime.fromtimestamp(float(timestamp_ms) / 1000, tz=timezone.utc).date()
            supply = float(market_cap) / float(price)
        except (TypeError, ValueError, OverflowError) as e:
            raise ParseError(f"Malformed market chart sample at {index}: {sample!r}") from e
        by_day[day] = supply

    return tuple(SupplyHistoryPoint(date=d, supply=s) for d, s in sorted(by_day.items()))


@dataclass(frozen=True)
class TokenPrice:
    """Spot price of a token."""

    usd: float
    btc: float | None = None

    def to_dict(self) -> dict[str, float | None]:
        return {"usd": self.usd, "btc": self.btc}


@dataclass(frozen=True)
class ChainMarketData:
    """Current market data for one tracked chain."""

    symbol: str
    price: float
    market_cap: float
    circulating_supply: float
    total_supply: float | None
    max_supply: float | None = None
    last_updated: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "marketCap": self.market_cap,
            "circulatingSupply": self.circulating_supply,
            "totalSupply": self.total_supply,
            "maxSupply": self.max_supply,
            "lastUpdated": self.last_updated,
        }


@dataclass(frozen=True)
class InflationStats:
    """Annualized issuance over a window of complete days.

    Rates are percentages and may be negative.
    """

    window_days: int
    absolute_issuance: float
    inflation_rate_circulating: float
    inflation_rate_total: float

    @property
    def period(self) -> str:
        """Window label, e.g. "7d"."""
        return f"{self.window_days}d"

    def to_dict(self) -> dict[str, Any]:
        return {
            "period": self.period,
            "windowDays": self.window_days,
            "absolute": self.absolute_issuance,
            "inflationCirculating": self.inflation_rate_circulating,
            "inflationTotal": self.inflation_rate_total,
        }


@dataclass(frozen=True)
class SupplyGrowth:
    """Annualized supply growth between two history points.

    :ivar rate: Annualized growth in percent.
    :ivar actual_days: Days actually elapsed between the two points.
    """

    rate: float
    actual_days: float

    def to_dict(self) -> dict[str, float]:
        return {"rate": self.rate, "actualDays": self.actual_days}


@dataclass(frozen=True)
class EmissionSnapshot:
    """Last known-good emission series, as held by the fallback store.

    :ivar emissions: Series sorted descending by period.
    :ivar last_updated: When the provider produced the data (ISO 8601).
    :ivar last_synced: When the snapshot was written (ISO 8601).
    :ivar source: "live" when written after a live refresh, "fallback" when
        served from the store.
    """

    emissions: tuple[EmissionRecord, ...]
    last_updated: str
    last_synced: str
    source: str = "live"

    @classmethod
    def from_dict(cls, data: Any) -> EmissionSnapshot:
        """Parse the persisted JSON record.

        :param data: Decoded JSON object.
        :returns: New EmissionSnapshot.
        :raises ParseError: If the record is malformed.
        """
        if not isinstance(data, dict):
            raise ParseError(f"Snapshot is not an object: {data!r}")
        return cls(
            emissions=parse_emission_rows(data.get("emissions", [])),
            last_updated=str(data.get("lastUpdated") or ""),
            last_synced=str(data.get("lastSynced") or ""),
            source=str(data.get("source") or "fallback"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "emissions": [record.to_dict() for record in self.emissions],
            "lastUpdated": self.last_updated,
            "lastSynced": self.last_synced,
            "source": self.source,
        }


def utc_now_iso() -> str:
    """Current UTC time in ISO 8601 with a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
