"""
Background jobs module.
"""

from gateflow.jobs.reconcile_refunds import RefundReconciler, run_refund_reconciliation

__all__ = [
    "RefundReconciler",
    "run_refund_reconciliation",
]
