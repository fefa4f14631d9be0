"""System-wide constants. All magic numbers and strings live here."""

from __future__ import annotations

# ── Period Keys ──────────────────────────────────────────────────
MONTH_KEY_FORMAT = "%Y-%m"        # "2026-10"
DAY_KEY_FORMAT = "%Y-%m-%d"       # "2026-10-16"

# ── Gateway Event Types (Stripe) ─────────────────────────────────
EVT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVT_INVOICE_PAID = "invoice.payment_succeeded"
EVT_INVOICE_FAILED = "invoice.payment_failed"
EVT_TRIAL_WILL_END = "customer.subscription.trial_will_end"
EVT_CHECKOUT_COMPLETED = "checkout.session.completed"

# ── Gateway Subscription Statuses ────────────────────────────────
GW_ACTIVE_STATUSES = frozenset({"active", "trialing"})
GW_INCOMPLETE = "incomplete"
GW_DELINQUENT_STATUSES = frozenset({"past_due", "unpaid"})
GW_CANCELED = "canceled"

# Payment confirmation statuses under which an incomplete subscription is
# activated optimistically.
GW_PAYMENT_SETTLING_STATUSES = frozenset({"succeeded", "requires_confirmation"})

# ── Webhook ──────────────────────────────────────────────────────
SIGNATURE_HEADER = "Stripe-Signature"
DEFAULT_WEBHOOK_TOLERANCE = 300   # seconds

# ── HTTP ─────────────────────────────────────────────────────────
TENANT_HEADER = "X-Tenant-ID"

# ── Redis Ledger ─────────────────────────────────────────────────
USAGE_KEY_PREFIX = "usage"
USAGE_COUNTER_TTL = 62 * 24 * 3600   # seconds; outlives the longest period key
