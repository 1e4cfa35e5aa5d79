"""Installment engine services.

Planner, ledger, retry scheduler, gateway reconciler and early-payment
calculator. Import from the submodules directly.
"""
