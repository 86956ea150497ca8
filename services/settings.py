# services/settings.py
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Mapping

from utils.timeutil import service_zone


@dataclass(frozen=True)
class FareSettings:
    min_tap_in_balance: Decimal = Decimal("10")
    default_base_fare: Decimal = Decimal("20")
    default_fare_per_km: Decimal = Decimal("1.5")
    fallback_distance_km: Decimal = Decimal("2.5")
    co2_kg_per_km: Decimal = Decimal("0.12")
    points_per_km: int = 10
    sync_max_batch: int = 100
    default_bus_capacity: int = 40
    timezone_name: str = "Asia/Dhaka"

    @property
    def zone(self) -> dt.tzinfo:
        """Service zone: travel dates and "today" are reckoned here."""
        return service_zone(self.timezone_name)

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "FareSettings":
        d = cls()
        return cls(
            min_tap_in_balance=Decimal(str(config.get("MIN_TAP_IN_BALANCE", d.min_tap_in_balance))),
            default_base_fare=Decimal(str(config.get("DEFAULT_BASE_FARE", d.default_base_fare))),
            default_fare_per_km=Decimal(str(config.get("DEFAULT_FARE_PER_KM", d.default_fare_per_km))),
            fallback_distance_km=Decimal(str(config.get("FALLBACK_DISTANCE_KM", d.fallback_distance_km))),
            co2_kg_per_km=Decimal(str(config.get("CO2_KG_PER_KM", d.co2_kg_per_km))),
            points_per_km=int(config.get("POINTS_PER_KM", d.points_per_km)),
            sync_max_batch=int(config.get("SYNC_MAX_BATCH", d.sync_max_batch)),
            default_bus_capacity=int(config.get("DEFAULT_BUS_CAPACITY", d.default_bus_capacity)),
            timezone_name=str(config.get("APP_TIMEZONE") or d.timezone_name),
        )
