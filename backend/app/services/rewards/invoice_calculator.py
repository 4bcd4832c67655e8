"""
Invoice / Reward Calculator

Maps each verified transaction's fraud composite linearly onto the
reward band (2% at composite 0.0, 15% at composite 1.0), then bills the
business the reward subtotal plus a 20% admin fee.

Fake and forfeited (expired) transactions earn nothing.
Amounts are rounded to öre (2 decimals).
"""
import math
from typing import Iterable, Optional

from ...models.db_models import TransactionStatus
from ...models.verification import Invoice, InvoiceLineItem
from ..errors import InvalidInputError, InvalidScoreRangeError, ValidationError


REWARD_MIN_PERCENTAGE = 2.0
REWARD_MAX_PERCENTAGE = 15.0
ADMIN_FEE_RATE = 0.20


class InvoiceCalculator:
    """Pure reward and invoice arithmetic."""

    def __init__(
        self,
        min_percentage: float = REWARD_MIN_PERCENTAGE,
        max_percentage: float = REWARD_MAX_PERCENTAGE,
        admin_fee_rate: float = ADMIN_FEE_RATE,
    ):
        if not 0 <= min_percentage <= max_percentage <= 100:
            raise ValidationError("Reward band must satisfy 0 <= min <= max <= 100")
        if admin_fee_rate < 0:
            raise ValidationError("admin_fee_rate cannot be negative")
        self.min_percentage = min_percentage
        self.max_percentage = max_percentage
        self.admin_fee_rate = admin_fee_rate

    @classmethod
    def from_settings(cls, settings) -> "InvoiceCalculator":
        return cls(
            min_percentage=settings.reward_min_percentage,
            max_percentage=settings.reward_max_percentage,
            admin_fee_rate=settings.admin_fee_rate,
        )

    def reward_percentage(self, composite: float) -> float:
        """Reward percentage for a composite in [0, 1]."""
        if composite is None or isinstance(composite, bool) or not isinstance(composite, (int, float)):
            raise InvalidScoreRangeError(f"composite must be a number in [0, 1], got {composite!r}")
        if math.isnan(composite) or not 0.0 <= composite <= 1.0:
            raise InvalidScoreRangeError(f"composite must be in [0, 1], got {composite}")

        spread = self.max_percentage - self.min_percentage
        return round(self.min_percentage + composite * spread, 4)

    def reward_amount(self, composite: float, purchase_amount: float) -> float:
        """Reward in SEK for one purchase."""
        if purchase_amount is None or isinstance(purchase_amount, bool) or not isinstance(purchase_amount, (int, float)):
            raise InvalidInputError("purchase_amount must be a number")
        if math.isnan(purchase_amount) or purchase_amount < 0:
            raise InvalidInputError("purchase_amount must be a non-negative number")

        return round(purchase_amount * self.reward_percentage(composite) / 100.0, 2)

    def admin_fee(self, reward_subtotal: float) -> float:
        return round(reward_subtotal * self.admin_fee_rate, 2)

    def line_item(
        self,
        transaction_id: str,
        store_id: str,
        purchase_amount: float,
        composite: float,
    ) -> InvoiceLineItem:
        return InvoiceLineItem(
            transaction_id=transaction_id,
            store_id=store_id,
            purchase_amount=round(purchase_amount, 2),
            composite_score=round(composite, 4),
            reward_percentage=self.reward_percentage(composite),
            reward_amount=self.reward_amount(composite, purchase_amount),
        )

    def build_invoice(
        self,
        business_id: str,
        cycle_id: str,
        transactions: Iterable,
        invoice_id: Optional[str] = None,
    ) -> Invoice:
        """
        Invoice over a cycle's transactions.

        Only VERIFIED transactions carrying a composite produce line
        items. The purchase amount is the reconciled actual amount when
        present, otherwise the customer-reported amount.
        """
        items = []
        for tx in transactions:
            if tx.verification_status != TransactionStatus.VERIFIED or tx.fraud_composite is None:
                continue
            amount = tx.actual_amount if tx.actual_amount is not None else tx.customer_amount
            items.append(self.line_item(tx.id, tx.store_id, amount, tx.fraud_composite))

        subtotal = round(sum(item.reward_amount for item in items), 2)
        fee = self.admin_fee(subtotal)

        return Invoice(
            business_id=business_id,
            cycle_id=cycle_id,
            line_items=items,
            reward_subtotal=subtotal,
            admin_fee=fee,
            total=round(subtotal + fee, 2),
            invoice_id=invoice_id,
        )
