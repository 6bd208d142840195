"""Prometheus metrics for invoice reconciliation.

Registered in the default registry, so they are served by the API's
/metrics endpoint alongside the HTTP request metrics.
"""

from prometheus_client import Counter

invoices_reconciled_total = Counter(
    "invoices_reconciled_total",
    "Total invoices run through reconciliation",
    ["status"],  # approvable, needs_review, merged, failed
)

validation_flags_total = Counter(
    "validation_flags_total",
    "Validation flags raised",
    ["flag"],
)

invoice_merges_total = Counter(
    "invoice_merges_total",
    "Duplicate-invoice merges",
    ["outcome"],  # merged, already_merged, failed, conflict
)

date_conversions_total = Counter(
    "date_conversions_total",
    "Invoice date conversions",
    ["calendar", "status"],  # BS/AD, success/failed
)
