"""
Estimate: wires one engine per input generation to a long-lived ledger and
installment reconciler.

Payment details always receive the grand total from the current engine's
totals. Every ledger commit and every input update re-derives the remaining
balance and hands it to the reconciler, which ignores unchanged balances.
"""

import logging
from datetime import date
from decimal import Decimal

from .cost_engine import CostEngine
from .installments import InstallmentReconciler
from .ledger import PaymentLedger
from .schemas import CategoryBreakdowns, PaymentDetails, Totals

logger = logging.getLogger(__name__)


class Estimate:
    def __init__(self, categories=None, settings=None, work_types=None,
                 options=None, reconciler_defer=None):
        self.work_types = work_types
        self.options = options
        self.engine = CostEngine(categories, settings, work_types, options)
        self.ledger = PaymentLedger(self.engine.settings.payments)
        self.reconciler = InstallmentReconciler(self.ledger, defer=reconciler_defer)
        # A loaded plan is taken as-is until the balance actually moves.
        self.reconciler.remember_balance(self.remaining_balance())
        self.ledger.subscribe(self._on_ledger_commit)

    def update_inputs(self, categories=None, settings=None):
        """
        Swap in new categories and/or project settings.

        The ledger stays the source of truth for payments; payments carried
        in the new settings are not re-imported.
        """
        if categories is None:
            categories = self.engine.categories
        if settings is None:
            settings = self.engine.settings
        self.engine = CostEngine(categories, settings, self.work_types, self.options)
        logger.debug("Estimate inputs updated (fingerprint %s)", self.engine.fingerprint()[:12])
        self._sync_installments()

    # --- Results ---

    def totals(self) -> Totals:
        return self.engine.calculate_totals()

    def breakdowns(self) -> CategoryBreakdowns:
        return self.engine.calculate_category_breakdowns()

    def payment_details(self, today: date = None) -> PaymentDetails:
        return self.ledger.calculate_payment_details(self.totals().total, today=today)

    def remaining_balance(self) -> Decimal:
        return self.ledger.remaining_balance(self.totals().total)

    # --- Installments ---

    def generate_installments(self, periods, start_date, method: str = None):
        """Build a plan over the current remaining balance and apply it."""
        records = self.reconciler.generate(periods, start_date, self.remaining_balance(), method=method)
        self.reconciler.apply(records)
        return records

    def _on_ledger_commit(self, ledger):
        self._sync_installments()

    def _sync_installments(self) -> int:
        return self.reconciler.auto_recalculate(self.remaining_balance())
