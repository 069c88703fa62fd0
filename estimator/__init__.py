"""
Remodel estimator core.

Pure Python math. No I/O in the engine.
Given a snapshot of categories -> work items -> surfaces plus project settings,
produce exact material/labor/waste/tax/markup totals, and keep the payment
ledger (deposit, one-time payments, installment plan) reconciled against them.
"""

__version__ = "1.0.0"
