"""
Installment plans: generate a schedule that sums exactly to the remaining
balance, apply it to the ledger, and keep unpaid installments in step when
the balance moves.

Recalculation guards:
- `in_progress` is set before the reconciler writes and released after the
  commit, either immediately or through an injected `defer(callback)`
  scheduler (e.g. `loop.call_soon`). Calls made while it is set are skipped,
  which covers listeners that fire from the reconciler's own commit.
- the last processed balance is remembered; an unchanged balance writes nothing.
"""

import logging
from decimal import Decimal
from typing import Callable, List, Optional

from dateutil.relativedelta import relativedelta

from .config import settings
from .errors import ValidationError
from .ledger import PaymentLedger, validate_date
from .models import PaymentType
from .money import CENT, ZERO, quantize_cents, split_evenly, to_decimal
from .schemas import PaymentRecord

logger = logging.getLogger(__name__)


class InstallmentReconciler:
    def __init__(self, ledger: PaymentLedger, defer: Callable = None):
        self.ledger = ledger
        self.defer = defer
        self._in_progress = False
        self._last_balance: Optional[Decimal] = None

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    @property
    def last_balance(self) -> Optional[Decimal]:
        return self._last_balance

    def remember_balance(self, balance):
        """Record `balance` as already processed (e.g. when loading a saved plan)."""
        self._last_balance = quantize_cents(to_decimal(balance))

    def _acquire(self):
        self._in_progress = True

    def _release(self):
        if self.defer is not None:
            self.defer(self._clear_in_progress)
        else:
            self._clear_in_progress()

    def _clear_in_progress(self):
        self._in_progress = False

    # --- Plan generation ---

    def generate(self, duration_periods, start_date, remaining_balance,
                 method: str = None) -> List[PaymentRecord]:
        """
        Monthly installments from `start_date` summing exactly to `remaining_balance`.

        Raises ValidationError (and returns nothing) when the duration or
        balance cannot produce a plan of positive cent amounts.
        """
        periods = self._validate_periods(duration_periods)
        try:
            balance = quantize_cents(to_decimal(remaining_balance))
        except ValueError:
            raise ValidationError(
                f"Remaining balance must be a number: {remaining_balance}",
                code="INVALID_BALANCE",
            )
        if balance <= 0:
            raise ValidationError(
                "Nothing left to schedule: remaining balance must be greater than 0",
                code="INVALID_BALANCE",
                context={"remaining_balance": str(balance)},
            )
        if balance < CENT * periods:
            raise ValidationError(
                f"Remaining balance {balance} is too small for {periods} installments",
                code="BALANCE_TOO_SMALL",
                context={"remaining_balance": str(balance), "periods": periods},
            )
        start = validate_date(start_date)

        amounts = split_evenly(balance, periods)
        return [
            PaymentRecord(
                date=start + relativedelta(months=index),
                amount=amount,
                method=method or settings.DEFAULT_PAYMENT_METHOD,
                note=f"Installment {index + 1} of {periods}",
                is_paid=False,
                type=PaymentType.INSTALLMENT,
                installment_number=index + 1,
                total_installments=periods,
            )
            for index, amount in enumerate(amounts)
        ]

    def _validate_periods(self, value) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            try:
                value = int(str(value).strip())
            except ValueError:
                raise ValidationError(
                    f"Duration must be a whole number of periods: {value}",
                    code="INVALID_DURATION",
                )
        if value < 1:
            raise ValidationError(
                "Duration must be at least 1 period",
                code="INVALID_DURATION",
                context={"duration": value},
            )
        if value > settings.MAX_INSTALLMENT_PERIODS:
            raise ValidationError(
                f"Duration cannot exceed {settings.MAX_INSTALLMENT_PERIODS} periods",
                code="INVALID_DURATION",
                context={"duration": value, "limit": settings.MAX_INSTALLMENT_PERIODS},
            )
        return value

    def apply(self, generated: List[PaymentRecord]):
        """Replace the unpaid installments with `generated` in one commit. Paid ones are kept."""
        records = list(generated)
        if not records:
            raise ValidationError("Installment plan is empty", code="EMPTY_PLAN")
        count = len(records)
        for expected, record in enumerate(records, start=1):
            if record.type != PaymentType.INSTALLMENT:
                raise ValidationError(
                    f"Plan entry {expected} is not an installment",
                    code="INVALID_PLAN",
                    context={"payment_id": record.id, "type": record.type.value},
                )
            if record.installment_number != expected or record.total_installments != count:
                raise ValidationError(
                    f"Plan entries must be numbered 1..{count}",
                    code="INVALID_PLAN",
                    context={"payment_id": record.id,
                             "installment_number": record.installment_number},
                )

        self._acquire()
        try:
            self.ledger.replace_installments(records)
        finally:
            self._release()
        self._last_balance = sum((r.amount for r in records), ZERO)
        logger.info("Applied %d-period installment plan totalling %s", count, self._last_balance)

    # --- Recalculation ---

    def auto_recalculate(self, new_remaining_balance) -> int:
        """
        Spread the balance over unpaid, unpinned installments.

        Pinned (manually adjusted) unpaid amounts are taken off the balance
        first; paid and pinned records are never rewritten. Returns the number
        of records written.
        """
        if self._in_progress:
            logger.debug("Recalculation already in progress, skipping")
            return 0

        balance = max(ZERO, quantize_cents(to_decimal(new_remaining_balance)))
        if self._last_balance is not None and balance == self._last_balance:
            return 0

        unpaid = sorted(
            (p for p in self.ledger.installments() if not p.is_paid),
            key=lambda p: p.installment_number or 0,
        )
        free = [p for p in unpaid if not p.manually_adjusted]
        pinned_total = sum((p.amount for p in unpaid if p.manually_adjusted), ZERO)

        if not free:
            self._last_balance = balance
            return 0

        target = max(ZERO, balance - pinned_total)
        amounts = split_evenly(target, len(free))
        changes = {p.id: amount for p, amount in zip(free, amounts) if p.amount != amount}

        written = 0
        if changes:
            self._acquire()
            try:
                written = self.ledger.update_amounts(changes)
            finally:
                self._release()
        self._last_balance = balance
        logger.info(
            "Recalculated installments for balance %s: %d of %d unpaid rewritten",
            balance, written, len(free),
        )
        return written

    def reset_manual_adjustments(self) -> int:
        """Unpin every installment so the next recalculation redistributes all of them."""
        self._acquire()
        try:
            cleared = self.ledger.clear_adjustments()
        finally:
            self._release()
        self._last_balance = None
        return cleared
