"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter

# Purchase metrics
purchases_created_total = Counter(
    "purchases_created_total",
    "Total purchases created",
    labelnames=["purchase_type", "source"],
)

purchases_settled_total = Counter(
    "purchases_settled_total",
    "Total purchases that reached completed",
    labelnames=["channel", "purchase_type"],
)

purchases_failed_total = Counter(
    "purchases_failed_total",
    "Total purchases that reached failed",
    labelnames=["channel"],
)

settlement_duplicates_total = Counter(
    "settlement_duplicates_total",
    "Settlement confirmations ignored because the purchase was already completed",
    labelnames=["channel"],
)

# Ledger metrics
ledger_entries_total = Counter(
    "ledger_entries_total",
    "Total ledger entries written",
    labelnames=["type"],
)

insufficient_funds_total = Counter(
    "insufficient_funds_total",
    "Usage debits rejected for insufficient credits",
)

auto_topups_triggered_total = Counter(
    "auto_topups_triggered_total",
    "Auto-topup purchases created by the monitor",
)

# Coupon metrics
coupon_redemptions_total = Counter(
    "coupon_redemptions_total",
    "Total coupon redemptions recorded",
    labelnames=["discount_type"],
)

# Invoice metrics
invoices_generated_total = Counter(
    "invoices_generated_total",
    "Total number of invoices generated",
    labelnames=["currency"],
)

invoice_generation_failures_total = Counter(
    "invoice_generation_failures_total",
    "Invoice generation attempts that failed and were left for backfill",
)

# Subscription metrics
subscriptions_activated_total = Counter(
    "subscriptions_activated_total",
    "Total subscriptions activated",
    labelnames=["tier", "billing_cycle"],
)
