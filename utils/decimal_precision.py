"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all monetary operations
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Union, Optional

from utils.exception_handler import ValidationError

logger = logging.getLogger(__name__)

# Set global decimal precision for financial calculations
getcontext().prec = 28

Numeric = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Enforces Decimal-only monetary operations with proper precision"""

    MONEY_PRECISION = Decimal("0.01")  # 2 decimal places, half-up
    RATIO_PRECISION = Decimal("0.00000001")
    ZERO = Decimal("0.00")

    @classmethod
    def to_decimal(cls, value: Optional[Numeric], context: str = "monetary") -> Decimal:
        """Safely convert a stored numeric value to Decimal"""
        if value is None:
            return Decimal("0")

        if isinstance(value, Decimal):
            return value

        try:
            # Convert to string first to avoid float precision issues
            return Decimal(str(value))
        except (InvalidOperation, ValueError) as e:
            logger.error(f"Failed to convert {value} to Decimal in context {context}: {e}")
            return Decimal("0")

    @classmethod
    def round2(cls, amount: Optional[Numeric]) -> Decimal:
        """Quantize amount to 2 decimal places, rounding half-up"""
        return cls.to_decimal(amount, "round2").quantize(cls.MONEY_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def percentage_of(cls, amount: Numeric, percent: Numeric) -> Decimal:
        """round2(amount * percent / 100)"""
        amount_decimal = cls.to_decimal(amount, "percentage_amount")
        percent_decimal = cls.to_decimal(percent, "percentage_rate")
        return cls.round2(amount_decimal * percent_decimal / Decimal("100"))

    @classmethod
    def divide_precise(cls, dividend: Numeric, divisor: Numeric) -> Decimal:
        """Divide with zero protection; a zero divisor yields 0"""
        dividend_decimal = cls.to_decimal(dividend, "divide_dividend")
        divisor_decimal = cls.to_decimal(divisor, "divide_divisor")

        if divisor_decimal == 0:
            logger.error(f"Division by zero attempted: {dividend} / {divisor}")
            return Decimal("0")

        return (dividend_decimal / divisor_decimal).quantize(cls.RATIO_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def format_amount(cls, amount: Optional[Numeric]) -> str:
        """Render a money value as a fixed two-decimal string"""
        return f"{cls.round2(amount):.2f}"


class FinancialValidation:
    """Validation utilities for amounts arriving from callers"""

    @classmethod
    def parse_amount(cls, value, field: str = "amount") -> Decimal:
        """Parse a caller-supplied amount; rejects missing, non-numeric and non-finite values"""
        if value is None or value == "" or isinstance(value, bool):
            raise ValidationError(f"{field} is required")
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"{field} must be a number")
        if not amount.is_finite():
            raise ValidationError(f"{field} must be a finite number")
        return amount

    @classmethod
    def validate_positive_amount(
        cls,
        value,
        field: str = "amount",
        min_amount: Optional[Numeric] = None,
        max_amount: Optional[Numeric] = None,
    ) -> Decimal:
        """Validate a positive amount within optional bounds and return it rounded to 2 places"""
        amount = cls.parse_amount(value, field)

        if amount <= 0:
            raise ValidationError(f"{field} must be greater than 0")

        if min_amount is not None and amount < MonetaryDecimal.to_decimal(min_amount):
            raise ValidationError(f"{field} must be at least {MonetaryDecimal.format_amount(min_amount)}")

        if max_amount is not None and amount > MonetaryDecimal.to_decimal(max_amount):
            raise ValidationError(f"{field} cannot exceed {MonetaryDecimal.format_amount(max_amount)}")

        rounded = MonetaryDecimal.round2(amount)
        if rounded <= 0:
            raise ValidationError(f"{field} must be at least 0.01")
        return rounded
