"""
pricing_source.py - Time-stamped prices for treasury valuation

Classes:
- PricingSource: Protocol defining the pricing interface
- StaticPricingSource: Prices set by hand, stamped when they were set
- TimeSeriesPricingSource: Historical observations with point-in-time lookup

Functions:
- fresh_price: Read a price and reject it if missing, stale, or non-positive

All prices are quoted in a base currency (the flight's base asset).
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Set, Optional, List, Tuple, Protocol, runtime_checkable
from bisect import bisect_right

from .core import StaleDataError


Observation = Tuple[Decimal, datetime]

DEFAULT_MAX_AGE = timedelta(hours=1)


@runtime_checkable
class PricingSource(Protocol):
    """
    Protocol for pricing sources.

    A pricing source returns the latest observation of a unit at or before a
    timestamp, together with the time it was observed.
    """
    base_currency: str

    def get_price(self, unit_symbol: str, timestamp: datetime) -> Optional[Decimal]:
        """Get the price of a single unit at a specific timestamp."""
        ...

    def get_observation(self, unit_symbol: str, timestamp: datetime) -> Optional[Observation]:
        """Get (price, observed_at) of the latest observation at or before timestamp."""
        ...


class StaticPricingSource:
    """
    Pricing source with hand-set prices.

    A price set without an observation time is treated as observed at every
    query (always fresh). The base currency always has a price of 1.
    """

    def __init__(
        self,
        prices: Dict[str, Decimal],
        base_currency: str = "USD",
        observed_at: Optional[datetime] = None,
    ):
        self.base_currency = base_currency
        self.prices: Dict[str, Decimal] = {k: Decimal(str(v)) for k, v in prices.items()}
        self.observed: Dict[str, Optional[datetime]] = {k: observed_at for k in prices}
        self.prices[base_currency] = Decimal("1")
        self.observed[base_currency] = None

    def get_price(self, unit_symbol: str, timestamp: datetime) -> Optional[Decimal]:
        return self.prices.get(unit_symbol)

    def get_observation(self, unit_symbol: str, timestamp: datetime) -> Optional[Observation]:
        if unit_symbol not in self.prices:
            return None
        observed_at = self.observed.get(unit_symbol)
        if observed_at is None or observed_at > timestamp:
            observed_at = timestamp
        return self.prices[unit_symbol], observed_at

    def update_price(self, unit_symbol: str, price: Decimal, observed_at: Optional[datetime] = None):
        """Set the price of a unit, optionally stamping when it was observed."""
        self.prices[unit_symbol] = Decimal(str(price))
        self.observed[unit_symbol] = observed_at

    def __repr__(self):
        return f"StaticPricingSource({len(self.prices)} prices, base={self.base_currency})"


class TimeSeriesPricingSource:
    """
    Pricing source with time-varying prices.

    Uses the most recent observation at or before the requested timestamp.

    Examples:
        pricer = TimeSeriesPricingSource(base_currency="USDC")
        pricer.add_price("WETH", datetime(2025, 1, 15, 9), Decimal("3200"))

        pricer = TimeSeriesPricingSource({
            "WETH": [(t0, Decimal("3200")), (t1, Decimal("3180"))],
        }, base_currency="USDC")
    """

    def __init__(
        self,
        price_paths: Optional[Dict[str, List[Tuple[datetime, Decimal]]]] = None,
        base_currency: str = "USD"
    ):
        self.base_currency = base_currency
        self.price_history: Dict[str, List[Tuple[datetime, Decimal]]] = {}

        if price_paths:
            for unit, path in price_paths.items():
                if not path:
                    continue
                self.price_history[unit] = sorted(
                    ((ts, Decimal(str(p))) for ts, p in path), key=lambda x: x[0]
                )

    def add_price(self, unit_symbol: str, timestamp: datetime, price: Decimal):
        history = self.price_history.setdefault(unit_symbol, [])
        history.append((timestamp, Decimal(str(price))))
        history.sort(key=lambda x: x[0])

    def get_observation(self, unit_symbol: str, timestamp: datetime) -> Optional[Observation]:
        """
        Latest observation at or before timestamp, by binary search.

        The base currency is observed at every instant with price 1.
        """
        if unit_symbol == self.base_currency:
            return Decimal("1"), timestamp

        history = self.price_history.get(unit_symbol)
        if not history:
            return None

        timestamps = [ts for ts, _ in history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None
        observed_at, price = history[idx - 1]
        return price, observed_at

    def get_price(self, unit_symbol: str, timestamp: datetime) -> Optional[Decimal]:
        observation = self.get_observation(unit_symbol, timestamp)
        return observation[0] if observation else None

    def get_all_timestamps(self, unit_symbol: Optional[str] = None) -> List[datetime]:
        if unit_symbol:
            return [ts for ts, _ in self.price_history.get(unit_symbol, [])]
        all_times: Set[datetime] = set()
        for path in self.price_history.values():
            all_times.update(ts for ts, _ in path)
        return sorted(all_times)

    def __repr__(self):
        total_observations = sum(len(history) for history in self.price_history.values())
        return (f"TimeSeriesPricingSource({len(self.price_history)} units, "
                f"{total_observations} observations, base={self.base_currency})")


def fresh_price(
    source: PricingSource,
    unit_symbol: str,
    now: datetime,
    max_age: Optional[timedelta] = None,
) -> Decimal:
    """
    Read a price that is safe to act on.

    max_age defaults to DEFAULT_MAX_AGE.

    Raises:
        StaleDataError: If there is no observation, the observation is older
            than max_age, or the price is not positive
    """
    if max_age is None:
        max_age = DEFAULT_MAX_AGE
    observation = source.get_observation(unit_symbol, now)
    if observation is None:
        raise StaleDataError(f"No price for {unit_symbol} at {now}")
    price, observed_at = observation
    age = now - observed_at
    if age > max_age:
        raise StaleDataError(f"Price for {unit_symbol} is {age} old (max {max_age})")
    if price is None or price <= 0:
        raise StaleDataError(f"Price for {unit_symbol} is not positive: {price}")
    return price
