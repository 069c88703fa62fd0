"""
Payment ledger: the project's payment records plus every mutation on them.

Records are frozen PaymentRecords held in a tuple. A mutation validates first,
then builds a new tuple, swaps it in, bumps `revision` and notifies listeners.
Nothing is ever edited in place, so a reader holding `payments` always has a
complete snapshot.

Deposit rules:
- at most one Deposit record
- the deposit is always paid
- it changes only through set_deposit (0 removes it)
"""

import logging
from datetime import date
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from .config import settings
from .errors import ConsistencyError, ValidationError
from .models import PaymentType
from .money import ZERO, fmt, quantize_cents, to_decimal
from .schemas import CalcIssue, PaymentDetails, PaymentRecord, PaymentSummary

logger = logging.getLogger(__name__)


def is_deposit_method(method: str = None) -> bool:
    """Method 'Deposit' is the only label that makes a payment the deposit."""
    return (method or "").strip().lower() == "deposit"


def looks_like_deposit(record: PaymentRecord = None, method: str = None, note: str = None) -> bool:
    """
    Deposit-like for the uniqueness check: Deposit type, method 'Deposit', or
    a note that mentions a deposit. Only the first two make a record the
    deposit; a note never re-types a record.
    """
    if record is not None:
        if record.type == PaymentType.DEPOSIT:
            return True
        method, note = record.method, record.note
    return is_deposit_method(method) or "deposit" in (note or "").lower()


def validate_amount(amount, field: str = "amount", allow_zero: bool = False) -> Decimal:
    """Parse and range-check a payment amount. Raises ValidationError."""
    try:
        value = to_decimal(amount)
    except ValueError:
        raise ValidationError(
            f"Payment {field} must be a valid number",
            code="INVALID_AMOUNT",
            context={"field": field, "value": str(amount)},
        )
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(
            f"Payment {field} must be greater than 0",
            code="INVALID_AMOUNT",
            context={"field": field, "value": str(value)},
        )
    limit = to_decimal(settings.MAX_PAYMENT_AMOUNT)
    if value > limit:
        raise ValidationError(
            f"Payment {field} cannot exceed {fmt(limit)}",
            code="AMOUNT_EXCEEDS_LIMIT",
            context={"field": field, "value": str(value), "limit": fmt(limit)},
        )
    return quantize_cents(value)


def validate_date(value) -> date:
    if value is None or value == "":
        raise ValidationError("Payment date is required", code="MISSING_DATE")
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(
            f"Invalid payment date: {value}",
            code="INVALID_DATE",
            context={"value": str(value)},
        )


class PaymentLedger:
    def __init__(self, payments: Iterable = ()):
        self._payments = tuple(
            p if isinstance(p, PaymentRecord) else PaymentRecord.model_validate(p)
            for p in payments
        )
        self.revision = 0
        self._listeners: List[Callable] = []

    @property
    def payments(self) -> tuple:
        return self._payments

    def subscribe(self, listener: Callable) -> Callable:
        """Call `listener(ledger)` after every commit. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _commit(self, payments, reason: str):
        self._payments = tuple(payments)
        self.revision += 1
        logger.debug("Ledger commit %d: %s (%d records)", self.revision, reason, len(self._payments))
        for listener in list(self._listeners):
            listener(self)

    # --- Queries ---

    def find(self, payment_id: str) -> PaymentRecord:
        for payment in self._payments:
            if payment.id == payment_id:
                return payment
        raise ValidationError(
            f"Payment '{payment_id}' not found",
            code="PAYMENT_NOT_FOUND",
            context={"payment_id": payment_id},
        )

    def deposits(self) -> List[PaymentRecord]:
        return [p for p in self._payments if p.type == PaymentType.DEPOSIT]

    def find_deposit(self) -> Optional[PaymentRecord]:
        deposits = self.deposits()
        return deposits[0] if deposits else None

    @property
    def deposit(self) -> Optional[PaymentRecord]:
        return self.find_deposit()

    def installments(self) -> List[PaymentRecord]:
        return [p for p in self._payments if p.type == PaymentType.INSTALLMENT]

    def total_paid(self) -> Decimal:
        return sum((p.amount for p in self._payments if p.is_paid), ZERO)

    def remaining_balance(self, grand_total) -> Decimal:
        return max(ZERO, quantize_cents(to_decimal(grand_total)) - self.total_paid())

    def calculate_payment_details(self, grand_total, today: date = None) -> PaymentDetails:
        today = today or date.today()
        errors = []
        try:
            grand = quantize_cents(to_decimal(grand_total))
        except ValueError:
            errors.append(ValidationError(
                f"Invalid grand total: {grand_total}",
                code="INVALID_GRAND_TOTAL",
            ).to_issue())
            grand = ZERO

        deposits = self.deposits()
        if len(deposits) > 1:
            logger.warning("Ledger holds %d deposit records", len(deposits))
            errors.append(ConsistencyError(
                f"Found {len(deposits)} deposit records; only one is allowed",
                code="DUPLICATE_DEPOSIT",
                context={"payment_ids": [d.id for d in deposits]},
            ).to_issue())

        paid = [p for p in self._payments if p.is_paid]
        overdue = [p for p in self._payments if not p.is_paid and p.date < today]
        total_paid = sum((p.amount for p in paid), ZERO)

        warnings = []
        if total_paid > grand:
            warnings.append(CalcIssue(
                message=f"Payments ({fmt(total_paid)}) exceed the grand total ({fmt(grand)})",
                code="OVERPAID",
                context={"total_paid": fmt(total_paid), "grand_total": fmt(grand)},
            ))

        return PaymentDetails(
            grand_total=fmt(grand),
            total_paid=fmt(total_paid),
            total_due=fmt(max(ZERO, grand - total_paid)),
            overdue_payments=fmt(sum((p.amount for p in overdue), ZERO)),
            deposit=fmt(deposits[0].amount if deposits else ZERO),
            summary=PaymentSummary(
                paid_payments=len(paid),
                total_payments=len(self._payments),
                overdue_payments=len(overdue),
            ),
            errors=errors,
            warnings=warnings,
        )

    # --- Mutations ---

    def set_deposit(self, amount, date=None, method: str = None) -> Optional[PaymentRecord]:
        """
        Create, replace or remove the deposit.

        amount > 0 replaces the existing deposit in place (same id and position)
        or appends a new one; amount == 0 removes it. Returns the deposit, or
        None when removed.
        """
        value = validate_amount(amount, field="deposit", allow_zero=True)
        existing = self.find_deposit()

        if value == 0:
            if existing is None:
                return None
            self._commit([p for p in self._payments if p.id != existing.id], "remove deposit")
            return None

        when = validate_date(date) if date is not None else (existing.date if existing else date_today())
        if existing is not None:
            deposit = existing.model_copy(update={
                "amount": value,
                "date": when,
                "method": method or existing.method,
            })
            self._commit([deposit if p.id == existing.id else p for p in self._payments], "replace deposit")
        else:
            deposit = PaymentRecord(
                date=when,
                amount=value,
                method=method or settings.DEFAULT_PAYMENT_METHOD,
                note="Deposit",
                is_paid=True,
                type=PaymentType.DEPOSIT,
            )
            self._commit(list(self._payments) + [deposit], "add deposit")
        return deposit

    def add_payment(self, amount, date, method: str = None, note: str = "",
                    is_paid: bool = False, type: PaymentType = None) -> PaymentRecord:
        """
        Append a one-time payment.

        Only OneTime and Deposit are accepted; installments come from the
        reconciler. A Deposit, or an untyped payment with method 'Deposit',
        is routed to set_deposit. A payment whose note mentions a deposit is
        refused while a deposit exists and otherwise stays a one-time
        payment with `is_paid` as given.
        """
        value = validate_amount(amount)
        when = validate_date(date)
        type = _payment_type(type)

        deposit_like = type == PaymentType.DEPOSIT or (type is None and is_deposit_method(method))
        if deposit_like or (type is None and looks_like_deposit(method=method, note=note)):
            if self.find_deposit() is not None:
                raise ConsistencyError(
                    "A deposit already exists; edit it instead of adding another",
                    code="DUPLICATE_DEPOSIT",
                )
        if deposit_like:
            return self.set_deposit(value, date=when, method=method)

        record = PaymentRecord(
            date=when,
            amount=value,
            method=method or settings.DEFAULT_PAYMENT_METHOD,
            note=note or "",
            is_paid=is_paid,
            type=type or PaymentType.ONE_TIME,
        )
        self._commit(list(self._payments) + [record], "add payment")
        return record

    def _not_deposit(self, payment: PaymentRecord, action: str):
        if payment.type == PaymentType.DEPOSIT:
            raise ValidationError(
                f"Cannot {action} the deposit directly; use set_deposit",
                code="DEPOSIT_LOCKED",
                context={"payment_id": payment.id, "action": action},
            )

    def _replace(self, updated: PaymentRecord, reason: str):
        self._commit([updated if p.id == updated.id else p for p in self._payments], reason)

    def toggle_paid(self, payment_id: str) -> PaymentRecord:
        payment = self.find(payment_id)
        self._not_deposit(payment, "toggle")
        updated = payment.model_copy(update={"is_paid": not payment.is_paid})
        self._replace(updated, "toggle paid")
        return updated

    def edit_amount(self, payment_id: str, amount) -> PaymentRecord:
        """Change one record's amount. Installments edited by hand become pinned."""
        payment = self.find(payment_id)
        self._not_deposit(payment, "edit")
        value = validate_amount(amount)
        update = {"amount": value}
        if payment.type == PaymentType.INSTALLMENT:
            update["manually_adjusted"] = True
        updated = payment.model_copy(update=update)
        self._replace(updated, "edit amount")
        return updated

    def mark_adjusted(self, payment_id: str, adjusted: bool = True) -> PaymentRecord:
        payment = self.find(payment_id)
        updated = payment.model_copy(update={"manually_adjusted": adjusted})
        self._replace(updated, "mark adjusted")
        return updated

    def delete_payment(self, payment_id: str):
        payment = self.find(payment_id)
        self._not_deposit(payment, "delete")
        self._commit([p for p in self._payments if p.id != payment_id], "delete payment")

    # --- Bulk operations used by the installment reconciler ---

    def replace_installments(self, records: List[PaymentRecord]):
        """
        Drop the unpaid installments and append `records` in one commit.

        Paid installments are payment history and stay where they are.
        """
        kept = [p for p in self._payments if p.type != PaymentType.INSTALLMENT or p.is_paid]
        self._commit(kept + list(records), "replace installments")

    def update_amounts(self, amounts: Dict[str, Decimal]) -> int:
        """Set several amounts in one commit. Returns the number of records changed."""
        for payment_id in amounts:
            self.find(payment_id)
        changed = 0
        updated = []
        for payment in self._payments:
            if payment.id in amounts:
                value = quantize_cents(to_decimal(amounts[payment.id]))
                if value < 0:
                    raise ValidationError(
                        "Payment amount cannot be negative",
                        code="INVALID_AMOUNT",
                        context={"payment_id": payment.id, "value": str(value)},
                    )
                if value != payment.amount:
                    payment = payment.model_copy(update={"amount": value})
                    changed += 1
            updated.append(payment)
        if changed:
            self._commit(updated, f"update {changed} amounts")
        return changed

    def clear_adjustments(self) -> int:
        """Unpin every installment. Returns the number of records changed."""
        changed = 0
        updated = []
        for payment in self._payments:
            if payment.type == PaymentType.INSTALLMENT and payment.manually_adjusted:
                payment = payment.model_copy(update={"manually_adjusted": False})
                changed += 1
            updated.append(payment)
        if changed:
            self._commit(updated, "clear adjustments")
        return changed


def _payment_type(value) -> Optional[PaymentType]:
    if value is None:
        return None
    try:
        value = PaymentType(value)
    except ValueError:
        raise ValidationError(
            f"Unknown payment type: {value}",
            code="INVALID_PAYMENT_TYPE",
            context={"type": str(value)},
        )
    if value == PaymentType.INSTALLMENT:
        raise ValidationError(
            "Installments are created by generating a plan, not added one by one",
            code="INVALID_PAYMENT_TYPE",
            context={"type": value.value},
        )
    return value


def date_today() -> date:
    return date.today()
