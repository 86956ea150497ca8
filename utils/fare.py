# utils/fare.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP

CENT = Decimal("0.01")


def to_money(x) -> Decimal:
    """
    Normalize any numeric to a 2-dp Decimal, rounding half up.
    Floats go through str() so 27.5 stays 27.50 rather than 27.4999...
    """
    if isinstance(x, Decimal):
        d = x
    else:
        d = Decimal(str(x))
    return d.quantize(CENT, rounding=ROUND_HALF_UP)


def round_distance(distance_km) -> Decimal:
    return to_money(distance_km)


def compute_fare(base_fare, fare_per_km, distance_km) -> Decimal:
    """fare = base_fare + distance_km * fare_per_km, to the paisa."""
    return to_money(Decimal(str(base_fare)) + Decimal(str(distance_km)) * Decimal(str(fare_per_km)))


def co2_saved_for(distance_km, kg_per_km) -> Decimal:
    return to_money(Decimal(str(distance_km)) * Decimal(str(kg_per_km)))


def points_for(distance_km, points_per_km: int) -> int:
    return int((Decimal(str(distance_km)) * points_per_km).to_integral_value(rounding=ROUND_FLOOR))


@dataclass(frozen=True)
class FareQuote:
    distance_km: Decimal
    fare: Decimal
    co2_saved: Decimal
    points_earned: int


def quote_journey(
    *,
    base_fare,
    fare_per_km,
    distance_km,
    co2_kg_per_km,
    points_per_km: int,
) -> FareQuote:
    """
    Derive every money/reward figure from one rounded distance so a replayed
    or re-audited journey always reproduces the same numbers.
    """
    d = round_distance(distance_km)
    return FareQuote(
        distance_km=d,
        fare=compute_fare(base_fare, fare_per_km, d),
        co2_saved=co2_saved_for(d, co2_kg_per_km),
        points_earned=points_for(d, points_per_km),
    )
