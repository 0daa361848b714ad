"""
Platform fee calculation.

fee = max(gross * fee_percent / 100, fee_minimum), net = gross - fee.
EscrowSettings guarantees at startup that the fee stays below every
accepted gross amount, so no per-call clamping is done here.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any

from payloom_escrow.config import EscrowSettings
from payloom_escrow.exceptions import ValidationError
from payloom_escrow.utils import CENTS, to_money


@dataclass(frozen=True)
class FeeBreakdown:
    gross: Decimal
    fee: Decimal
    net: Decimal


class FeeCalculator:
    """Computes platform fee and seller net from a gross amount."""

    def __init__(self, settings: EscrowSettings):
        self.settings = settings

    def _gross(self, gross_amount: Any) -> Decimal:
        try:
            gross = to_money(gross_amount)
        except ValueError as e:
            raise ValidationError(str(e))

        if gross <= 0:
            raise ValidationError("Amount must be positive")
        if gross < self.settings.min_order_amount:
            raise ValidationError(
                f"Amount must be at least {self.settings.currency} {self.settings.min_order_amount:,}"
            )
        if gross > self.settings.max_order_amount:
            raise ValidationError(
                f"Amount must not exceed {self.settings.currency} {self.settings.max_order_amount:,}"
            )
        return gross

    def calculate_fee(self, gross_amount: Any) -> Decimal:
        """
        Calculate the platform fee for a gross amount.

        Raises:
            ValidationError: If the amount is not numeric or outside the accepted range
        """
        gross = self._gross(gross_amount)
        percentage_fee = gross * self.settings.fee_percent / Decimal(100)
        fee = max(percentage_fee, self.settings.fee_minimum)
        return fee.quantize(CENTS, rounding=ROUND_HALF_UP)

    def split(self, gross_amount: Any) -> FeeBreakdown:
        """Return gross, fee and net for a gross amount."""
        gross = self._gross(gross_amount)
        fee = self.calculate_fee(gross)
        return FeeBreakdown(gross=gross, fee=fee, net=gross - fee)
