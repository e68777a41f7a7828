"""Discount code validation and redemption."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from .config import CENT
from .database.models import DiscountCode, DiscountType, utcnow
from .database.repository import DiscountCodeRepository
from .errors import (
    DiscountExhausted,
    DiscountExpired,
    DiscountNotFound,
    DiscountNotYetValid,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppliedDiscount:
    """A validated discount and the amount it takes off the subtotal."""
    code_id: str
    code: str
    amount: Decimal


def discount_amount(discount: DiscountCode, subtotal: Decimal) -> Decimal:
    """Compute the discount for a subtotal, rounded to cents and never above it."""
    value = Decimal(discount.discount_value)
    if discount.discount_type == DiscountType.PERCENTAGE.value:
        amount = (subtotal * value / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    else:
        amount = value.quantize(CENT, rounding=ROUND_HALF_UP)
    return max(Decimal("0.00"), min(amount, subtotal))


class DiscountValidator:
    """
    Validates discount codes against their window and quota, and redeems them.

    Validation is advisory: the quota is only enforced by ``redeem``, which
    must run inside the same transaction that inserts the order.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    async def validate(
        self,
        session: AsyncSession,
        code: str,
        subtotal: Decimal,
        now: Optional[datetime] = None,
    ) -> AppliedDiscount:
        """
        Check that a code can be applied to an order.

        Args:
            session: Session of the enclosing order transaction.
            code: Code as entered by the customer, any case.
            subtotal: Order subtotal in the base currency.
            now: Evaluation time, defaults to the validator's clock.

        Returns:
            AppliedDiscount with the amount to subtract.

        Raises:
            DiscountNotFound: Unknown or inactive code.
            DiscountNotYetValid: Before ``valid_from``.
            DiscountExpired: After ``valid_until``.
            DiscountExhausted: ``current_uses`` has reached ``max_uses``.
        """
        now = now or self._clock()
        discount = await DiscountCodeRepository(session).get_by_code(code)

        if discount is None or not discount.is_active:
            raise DiscountNotFound()
        if discount.valid_from is not None and now < discount.valid_from:
            raise DiscountNotYetValid()
        if discount.valid_until is not None and now > discount.valid_until:
            raise DiscountExpired()
        if discount.max_uses is not None and discount.current_uses >= discount.max_uses:
            raise DiscountExhausted()

        return AppliedDiscount(
            code_id=discount.id,
            code=discount.code,
            amount=discount_amount(discount, subtotal),
        )

    async def redeem(self, session: AsyncSession, code_id: str) -> None:
        """
        Consume one use of a code within the caller's transaction.

        Raises:
            DiscountExhausted: Another order consumed the last use first.
        """
        if not await DiscountCodeRepository(session).increment_usage(code_id):
            logger.info(f"Discount code {code_id} exhausted at redemption")
            raise DiscountExhausted()
