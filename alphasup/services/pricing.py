"""Pricing calculator: fees, deposits and gateway minor-unit conversion.

Pure functions. Inputs are not validated here; negative or non-numeric
amounts must be rejected by the caller.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from alphasup.config import settings

Number = Union[Decimal, int, float, str]

_UNIT = Decimal("1")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class PricingConfig:
    processing_fee_percentage: Decimal
    fixed_fee: Decimal
    default_deposit_percentage: Decimal

    @classmethod
    def from_settings(cls) -> "PricingConfig":
        return cls(
            processing_fee_percentage=Decimal(settings.PROCESSING_FEE_PERCENTAGE),
            fixed_fee=Decimal(settings.FIXED_FEE),
            default_deposit_percentage=Decimal(settings.DEFAULT_DEPOSIT_PERCENTAGE),
        )


@dataclass(frozen=True)
class TotalWithFees:
    total: Decimal
    fees: Decimal


def _dec(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() keeps floats like 0.1 from dragging binary noise into the result
    return Decimal(str(value))


def round_half_away(value: Decimal) -> Decimal:
    """Round to a whole unit, halves away from zero."""
    return value.quantize(_UNIT, rounding=ROUND_HALF_UP)


def calculate_total_with_fees(base_amount: Number, config: Optional[PricingConfig] = None) -> TotalWithFees:
    config = config or PricingConfig.from_settings()
    base = _dec(base_amount)
    fees = round_half_away(base * config.processing_fee_percentage / 100 + config.fixed_fee)
    return TotalWithFees(total=base + fees, fees=fees)


def calculate_deposit_amount(
    total_amount: Number, deposit_percentage: Optional[Number] = None, config: Optional[PricingConfig] = None
) -> Decimal:
    config = config or PricingConfig.from_settings()
    percentage = config.default_deposit_percentage if deposit_percentage is None else _dec(deposit_percentage)
    return round_half_away(_dec(total_amount) * percentage / 100)


def calculate_remaining_amount(total_amount: Number, deposit_amount: Number) -> Decimal:
    return _dec(total_amount) - _dec(deposit_amount)


def to_gateway_amount(amount: Number) -> int:
    """Decimal currency -> integer minor units (kuruş/cents)."""
    return int(round_half_away(_dec(amount) * 100))


def from_gateway_amount(amount: Number) -> Decimal:
    return (_dec(amount) / 100).quantize(_CENT, rounding=ROUND_HALF_UP)


def is_minor_unit_amount(amount: Number) -> bool:
    """True when ``amount`` has no precision below the gateway's minor unit."""
    value = _dec(amount)
    return value == value.quantize(_CENT)
