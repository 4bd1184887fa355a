"""Commerce models: catalogue, orders, subscriptions, invoices, payments and the permission matrix."""
import json
import secrets
from decimal import Decimal

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from commerce.services.sku_parser import hash_bundle
from workspace.models import Workspace

User = get_user_model()

ZERO = Decimal("0.00")


def _default_currency() -> str:
    """Resolve default billing currency from settings."""
    return getattr(settings, "COMMERCE_DEFAULT_CURRENCY", "GBP").upper()


class Gateway(models.TextChoices):
    STRIPE = "stripe", "Stripe"
    BTCPAY = "btcpay", "BTCPay"


class BillingCycle(models.TextChoices):
    MONTHLY = "monthly", "Monthly"
    YEARLY = "yearly", "Yearly"


CRYPTO_GATEWAYS = frozenset({"btcpay", "bitcoin", "crypto"})


class Package(models.Model):
    """Catalogue entry granting entitlements; supplies the prices used for proration."""

    code = models.CharField(max_length=64, unique=True, help_text="Stable package identifier (e.g. 'pro').")
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    monthly_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=ZERO,
        validators=[MinValueValidator(ZERO)],
    )
    yearly_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        default=ZERO,
        validators=[MinValueValidator(ZERO)],
    )
    currency = models.CharField(max_length=3, default=_default_currency)
    stripe_price_id_monthly = models.CharField(max_length=255, blank=True)
    stripe_price_id_yearly = models.CharField(max_length=255, blank=True)
    features = models.JSONField(default=dict, blank=True, help_text="Entitlement limits granted by the package.")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_package"
        ordering = ["monthly_price", "code"]

    def __str__(self):
        return f"Package<{self.code}>"

    def price_for_cycle(self, billing_cycle: str) -> Decimal:
        if billing_cycle == BillingCycle.YEARLY:
            return self.yearly_price
        return self.monthly_price

    def stripe_price_for_cycle(self, billing_cycle: str) -> str:
        if billing_cycle == BillingCycle.YEARLY:
            return self.stripe_price_id_yearly
        return self.stripe_price_id_monthly


class WorkspacePackage(models.Model):
    """Entitlement grant of a package to a workspace."""

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        SUSPENDED = "suspended", "Suspended"
        REVOKED = "revoked", "Revoked"

    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name="packages")
    package = models.ForeignKey(Package, on_delete=models.PROTECT, related_name="grants")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    granted_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField(null=True, blank=True)
    suspended_at = models.DateTimeField(null=True, blank=True)
    revoked_at = models.DateTimeField(null=True, blank=True)
    cycle_boosts = models.JSONField(
        default=dict,
        blank=True,
        help_text="Boosts that only last for the current billing cycle; cleared on renewal.",
    )
    source = models.CharField(max_length=50, blank=True, help_text="What granted the package (order, api, admin).")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_workspace_package"
        ordering = ["-granted_at"]
        indexes = [
            models.Index(fields=["workspace", "status"], name="ws_package_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["workspace", "package"],
                name="unique_workspace_package",
            ),
        ]

    def __str__(self):
        return f"WorkspacePackage<{self.workspace_id}:{self.package_id}:{self.status}>"


class Subscription(models.Model):
    """Recurring billing agreement between a workspace and a gateway."""

    class Status(models.TextChoices):
        TRIALING = "trialing", "Trialing"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past due"
        PAUSED = "paused", "Paused"
        CANCELLED = "cancelled", "Cancelled"
        INCOMPLETE = "incomplete", "Incomplete"
        EXPIRED = "expired", "Expired"

    LIVE_STATUSES = (Status.TRIALING, Status.ACTIVE, Status.PAST_DUE)

    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name="subscriptions")
    package = models.ForeignKey(
        Package,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
    )
    workspace_package = models.ForeignKey(
        WorkspacePackage,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="subscriptions",
    )
    gateway = models.CharField(max_length=20, choices=Gateway.choices)
    gateway_subscription_id = models.CharField(max_length=255, blank=True, null=True)
    gateway_customer_id = models.CharField(max_length=255, blank=True, null=True)
    gateway_price_id = models.CharField(max_length=255, blank=True, null=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.ACTIVE)
    billing_cycle = models.CharField(max_length=10, choices=BillingCycle.choices, default=BillingCycle.MONTHLY)
    current_period_start = models.DateTimeField()
    current_period_end = models.DateTimeField()
    trial_ends_at = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.CharField(max_length=255, blank=True)
    ended_at = models.DateTimeField(null=True, blank=True)
    paused_at = models.DateTimeField(null=True, blank=True)
    pause_count = models.PositiveIntegerField(default=0)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_subscription"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["workspace", "status"], name="subscription_ws_status_idx"),
            models.Index(fields=["gateway", "gateway_subscription_id"], name="subscription_gateway_idx"),
            models.Index(fields=["status", "current_period_end"], name="subscription_period_idx"),
        ]

    def __str__(self):
        return f"Subscription<{self.pk}:{self.workspace_id}:{self.status}>"

    @property
    def is_active(self) -> bool:
        return self.status == self.Status.ACTIVE

    @property
    def is_paused(self) -> bool:
        return self.status == self.Status.PAUSED

    def is_valid(self) -> bool:
        return self.status in self.LIVE_STATUSES

    def on_grace_period(self) -> bool:
        return bool(self.cancel_at_period_end and self.current_period_end > timezone.now())

    def can_pause(self, max_cycles: int) -> bool:
        return (self.pause_count or 0) < max_cycles

    def days_until_renewal(self) -> int:
        return max(0, (self.current_period_end - timezone.now()).days)


class Coupon(models.Model):
    class Type(models.TextChoices):
        PERCENTAGE = "percentage", "Percentage"
        FIXED_AMOUNT = "fixed_amount", "Fixed amount"

    class AppliesTo(models.TextChoices):
        ALL = "all", "All packages"
        PACKAGES = "packages", "Selected packages"

    class Duration(models.TextChoices):
        ONCE = "once", "Once"
        REPEATING = "repeating", "Repeating"
        FOREVER = "forever", "Forever"

    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=200, blank=True)
    description = models.TextField(blank=True)
    type = models.CharField(max_length=20, choices=Type.choices, default=Type.PERCENTAGE)
    value = models.DecimalField(max_digits=10, decimal_places=2)
    min_amount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    max_discount = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    applies_to = models.CharField(max_length=20, choices=AppliesTo.choices, default=AppliesTo.ALL)
    package_ids = models.JSONField(default=list, blank=True)
    max_uses = models.PositiveIntegerField(null=True, blank=True)
    max_uses_per_workspace = models.PositiveIntegerField(default=1)
    used_count = models.PositiveIntegerField(default=0)
    duration = models.CharField(max_length=20, choices=Duration.choices, default=Duration.ONCE)
    duration_months = models.PositiveIntegerField(null=True, blank=True)
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_until = models.DateTimeField(null=True, blank=True)
    is_active = models.BooleanField(default=True)
    stripe_coupon_id = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_coupon"
        ordering = ["code"]

    def __str__(self):
        return f"Coupon<{self.code}>"

    @property
    def is_percentage(self) -> bool:
        return self.type == self.Type.PERCENTAGE

    def is_valid(self, now=None) -> bool:
        now = now or timezone.now()
        if not self.is_active:
            return False
        if self.valid_from and self.valid_from > now:
            return False
        if self.valid_until and self.valid_until < now:
            return False
        if self.max_uses and self.used_count >= self.max_uses:
            return False
        return True

    def applies_to_package(self, package_id) -> bool:
        if self.applies_to == self.AppliesTo.ALL:
            return True
        if self.applies_to != self.AppliesTo.PACKAGES:
            return False
        return package_id in (self.package_ids or [])


class Order(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        PAID = "paid", "Paid"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    class Type(models.TextChoices):
        NEW = "new", "New purchase"
        RENEWAL = "renewal", "Renewal"
        UPGRADE = "upgrade", "Upgrade"
        DOWNGRADE = "downgrade", "Downgrade"

    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name="orders")
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="commerce_orders",
        help_text="User who placed the order; used for referral attribution.",
    )
    order_number = models.CharField(max_length=50, unique=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    type = models.CharField(max_length=20, choices=Type.choices, default=Type.NEW)
    billing_cycle = models.CharField(max_length=10, choices=BillingCycle.choices, default=BillingCycle.MONTHLY)
    currency = models.CharField(max_length=3, default=_default_currency)
    display_currency = models.CharField(max_length=3, blank=True)
    exchange_rate_used = models.DecimalField(max_digits=16, decimal_places=8, null=True, blank=True)
    base_currency_total = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO)
    tax_country = models.CharField(max_length=2, blank=True)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    gateway = models.CharField(max_length=20, choices=Gateway.choices, blank=True)
    gateway_session_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Checkout session / gateway invoice id used to correlate webhooks.",
    )
    coupon = models.ForeignKey(Coupon, on_delete=models.SET_NULL, null=True, blank=True, related_name="orders")
    billing_name = models.CharField(max_length=200, blank=True)
    billing_email = models.EmailField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    idempotency_key = models.CharField(max_length=255, blank=True, null=True, unique=True)
    failure_reason = models.CharField(max_length=255, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_order"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["gateway", "gateway_session_id"], name="order_gateway_session_idx"),
            models.Index(fields=["workspace", "status"], name="order_ws_status_idx"),
            models.Index(fields=["status", "created_at"], name="order_status_created_idx"),
        ]

    def __str__(self):
        return f"Order<{self.order_number}:{self.status}>"

    @property
    def is_paid(self) -> bool:
        return self.status == self.Status.PAID

    @staticmethod
    def generate_order_number() -> str:
        prefix = getattr(settings, "COMMERCE_BILLING", {}).get("order_prefix", "ORD")
        return f"{prefix}-{timezone.now():%Y%m%d}-{secrets.token_hex(3).upper()}"

    def save(self, *args, **kwargs):
        if not self.order_number:
            self.order_number = self.generate_order_number()
        return super().save(*args, **kwargs)


class OrderItem(models.Model):
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="items")
    package = models.ForeignKey(Package, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    sku = models.CharField(max_length=1024, blank=True)
    name = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(default=1)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    line_total = models.DecimalField(max_digits=12, decimal_places=2)
    billing_cycle = models.CharField(max_length=10, choices=BillingCycle.choices, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        db_table = "commerce_order_item"
        ordering = ["id"]

    def __str__(self):
        return f"OrderItem<{self.sku or self.name} x{self.quantity}>"

    def save(self, *args, **kwargs):
        if self.line_total is None:
            self.line_total = (self.unit_price or ZERO) * self.quantity
        return super().save(*args, **kwargs)


class Payment(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        SUCCEEDED = "succeeded", "Succeeded"
        FAILED = "failed", "Failed"
        UNDERPAID = "underpaid", "Underpaid"
        REFUNDED = "refunded", "Refunded"

    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name="payments")
    order = models.ForeignKey(Order, on_delete=models.SET_NULL, null=True, blank=True, related_name="payments")
    invoice = models.ForeignKey(
        "Invoice",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="payments",
    )
    gateway = models.CharField(max_length=20, choices=Gateway.choices)
    gateway_payment_id = models.CharField(max_length=255)
    gateway_customer_id = models.CharField(max_length=255, blank=True)
    currency = models.CharField(max_length=3, default=_default_currency)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    fee = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    failure_reason = models.CharField(max_length=255, blank=True)
    payment_method_type = models.CharField(max_length=50, blank=True)
    payment_method_last4 = models.CharField(max_length=4, blank=True)
    payment_method_brand = models.CharField(max_length=50, blank=True)
    refunded_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    gateway_response = models.JSONField(default=dict, blank=True, help_text="Raw gateway object kept for audit.")
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_payment"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["gateway", "gateway_payment_id"],
                name="unique_payment_gateway_reference",
            ),
        ]
        indexes = [
            models.Index(fields=["workspace", "status"], name="payment_ws_status_idx"),
        ]

    def __str__(self):
        return f"Payment<{self.gateway}:{self.gateway_payment_id}:{self.status}>"


class Invoice(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PAID = "paid", "Paid"
        OVERDUE = "overdue", "Overdue"
        VOID = "void", "Void"

    UNPAID_STATUSES = (Status.PENDING, Status.OVERDUE)

    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name="invoices")
    order = models.ForeignKey(Order, on_delete=models.SET_NULL, null=True, blank=True, related_name="invoices")
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="invoices",
    )
    payment = models.ForeignKey(
        Payment,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="settled_invoices",
    )
    invoice_number = models.CharField(max_length=50, unique=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    currency = models.CharField(max_length=3, default=_default_currency)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO)
    tax_country = models.CharField(max_length=2, blank=True)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    credit_applied = models.DecimalField(
        max_digits=12, decimal_places=2, default=ZERO, help_text="Settled from the workspace's credit notes."
    )
    amount_due = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    issue_date = models.DateField(default=timezone.localdate)
    due_date = models.DateField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    billing_name = models.CharField(max_length=200, blank=True)
    billing_email = models.EmailField(blank=True)
    auto_charge = models.BooleanField(default=True, help_text="Dunning may retry the charge automatically.")
    charge_attempts = models.PositiveIntegerField(default=0)
    last_charge_attempt = models.DateTimeField(null=True, blank=True)
    next_charge_attempt = models.DateTimeField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_invoice"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["workspace", "status"], name="invoice_ws_status_idx"),
            models.Index(fields=["status", "next_charge_attempt"], name="invoice_retry_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount_due__gte=0),
                name="invoice_amount_due_non_negative",
            ),
        ]

    def __str__(self):
        return f"Invoice<{self.invoice_number}:{self.status}>"

    @property
    def is_paid(self) -> bool:
        return self.status == self.Status.PAID

    def recalculate_amount_due(self) -> None:
        amount_due = (self.total or ZERO) - (self.amount_paid or ZERO) - (self.credit_applied or ZERO)
        if amount_due < 0:
            raise ValidationError("Invoice payments and credits cannot exceed the invoice total.")
        self.amount_due = amount_due

    def save(self, *args, **kwargs):
        self.recalculate_amount_due()
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and "amount_due" not in update_fields:
            kwargs["update_fields"] = list(update_fields) + ["amount_due"]
        return super().save(*args, **kwargs)


class InvoiceItem(models.Model):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    order_item = models.ForeignKey(OrderItem, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    description = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(default=1)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    line_total = models.DecimalField(max_digits=12, decimal_places=2)
    taxable = models.BooleanField(default=True)
    tax_rate = models.DecimalField(max_digits=5, decimal_places=2, default=ZERO)
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)

    class Meta:
        db_table = "commerce_invoice_item"
        ordering = ["id"]


class PaymentMethod(models.Model):
    """Saved payment method; soft-deactivated, never hard deleted."""

    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name="payment_methods")
    gateway = models.CharField(max_length=20, choices=Gateway.choices)
    gateway_payment_method_id = models.CharField(max_length=255)
    gateway_customer_id = models.CharField(max_length=255, blank=True)
    type = models.CharField(max_length=50, default="card")
    brand = models.CharField(max_length=50, blank=True)
    last_four = models.CharField(max_length=4, blank=True)
    exp_month = models.PositiveSmallIntegerField(null=True, blank=True)
    exp_year = models.PositiveSmallIntegerField(null=True, blank=True)
    is_default = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_payment_method"
        ordering = ["-is_default", "-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["gateway", "gateway_payment_method_id"],
                name="unique_payment_method_gateway_reference",
            ),
        ]

    def __str__(self):
        return f"PaymentMethod<{self.gateway}:{self.brand} {self.last_four}>"


class Refund(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        SUCCEEDED = "succeeded", "Succeeded"
        FAILED = "failed", "Failed"

    payment = models.ForeignKey(Payment, on_delete=models.CASCADE, related_name="refunds")
    gateway_refund_id = models.CharField(max_length=255, blank=True, null=True, unique=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    reason = models.CharField(max_length=50, blank=True)
    notes = models.TextField(blank=True)
    gateway_response = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_refund"
        ordering = ["-created_at"]


class CreditNote(models.Model):
    """Store credit owed to a workspace, consumed oldest first by later invoices."""

    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        ISSUED = "issued", "Issued"
        PARTIALLY_APPLIED = "partially_applied", "Partially applied"
        APPLIED = "applied", "Applied"
        VOID = "void", "Void"

    class Reason(models.TextChoices):
        PLAN_DOWNGRADE = "plan_downgrade", "Plan downgrade"
        PARTIAL_REFUND = "partial_refund", "Partial refund"
        GOODWILL = "goodwill", "Goodwill"

    USABLE_STATUSES = (Status.ISSUED, Status.PARTIALLY_APPLIED)

    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name="credit_notes")
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="credit_notes",
    )
    refund = models.ForeignKey(Refund, on_delete=models.SET_NULL, null=True, blank=True, related_name="credit_notes")
    applied_to_invoice = models.ForeignKey(
        Invoice,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="credit_notes",
        help_text="Last invoice this credit was applied to.",
    )
    reference_number = models.CharField(max_length=32, unique=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    amount_used = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    currency = models.CharField(max_length=3, default=_default_currency)
    reason = models.CharField(max_length=30, choices=Reason.choices)
    description = models.TextField(blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.DRAFT)
    issued_at = models.DateTimeField(null=True, blank=True)
    applied_at = models.DateTimeField(null=True, blank=True)
    voided_at = models.DateTimeField(null=True, blank=True)
    issued_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_credit_note"
        ordering = ["created_at", "pk"]
        indexes = [
            models.Index(fields=["workspace", "status"], name="credit_note_ws_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="credit_note_amount_positive"),
            models.CheckConstraint(condition=Q(amount_used__lte=F("amount")), name="credit_note_not_overdrawn"),
        ]

    def __str__(self):
        return f"CreditNote<{self.reference_number}:{self.status}>"

    @property
    def remaining_amount(self) -> Decimal:
        return max(ZERO, (self.amount or ZERO) - (self.amount_used or ZERO))

    @property
    def is_usable(self) -> bool:
        return self.status in self.USABLE_STATUSES and self.remaining_amount > 0


class WebhookEvent(models.Model):
    """One row per (gateway, event id); the unique constraint is the cross-delivery mutex."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSED = "processed", "Processed"
        FAILED = "failed", "Failed"
        SKIPPED = "skipped", "Skipped"

    gateway = models.CharField(max_length=20, choices=Gateway.choices)
    event_id = models.CharField(max_length=255)
    event_type = models.CharField(max_length=255, blank=True)
    payload = models.TextField(blank=True, help_text="Raw request body as received.")
    headers = models.JSONField(default=dict, blank=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    attempts = models.PositiveIntegerField(default=1)
    last_error = models.TextField(blank=True)
    http_status_code = models.PositiveSmallIntegerField(null=True, blank=True)
    order = models.ForeignKey(Order, on_delete=models.SET_NULL, null=True, blank=True, related_name="webhook_events")
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="webhook_events",
    )
    received_at = models.DateTimeField(default=timezone.now)
    processed_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_webhook_event"
        ordering = ["-received_at"]
        constraints = [
            models.UniqueConstraint(fields=["gateway", "event_id"], name="unique_webhook_gateway_event"),
        ]
        indexes = [
            models.Index(fields=["status", "received_at"], name="webhook_status_idx"),
        ]

    def __str__(self):
        return f"WebhookEvent<{self.gateway}:{self.event_id}:{self.status}>"

    def decoded_payload(self) -> dict:
        try:
            return json.loads(self.payload or "{}")
        except ValueError:
            return {}


class CouponUsage(models.Model):
    coupon = models.ForeignKey(Coupon, on_delete=models.CASCADE, related_name="usages")
    workspace = models.ForeignKey(Workspace, on_delete=models.CASCADE, related_name="coupon_usages")
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="coupon_usages")
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_coupon_usage"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["coupon", "order"], name="unique_coupon_usage_per_order"),
        ]


class ExchangeRate(models.Model):
    base_currency = models.CharField(max_length=3)
    target_currency = models.CharField(max_length=3)
    rate = models.DecimalField(max_digits=16, decimal_places=8)
    source = models.CharField(max_length=30, default="manual")
    fetched_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = "commerce_exchange_rate"
        ordering = ["-fetched_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["base_currency", "target_currency"],
                name="unique_exchange_rate_pair",
            ),
        ]

    def __str__(self):
        return f"ExchangeRate<{self.base_currency}->{self.target_currency}={self.rate}>"


class Entity(models.Model):
    """Node of the reseller hierarchy (M1 master, M2 facade, M3 dropshipper)."""

    class Type(models.TextChoices):
        MASTER = "m1", "Master company"
        FACADE = "m2", "Facade / storefront"
        DROPSHIP = "m3", "Dropshipper"

    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=200)
    type = models.CharField(max_length=2, choices=Type.choices)
    parent = models.ForeignKey("self", on_delete=models.PROTECT, null=True, blank=True, related_name="children")
    path = models.CharField(max_length=500, db_index=True, help_text="Materialized path of codes, e.g. ROOT/SHOP.")
    depth = models.PositiveSmallIntegerField(default=0)
    workspace = models.ForeignKey(
        Workspace,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="commerce_entities",
    )
    domain = models.CharField(max_length=255, blank=True, null=True, unique=True)
    currency = models.CharField(max_length=3, default=_default_currency)
    settings = models.JSONField(default=dict, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_entity"
        ordering = ["path"]
        verbose_name_plural = "Entities"

    def __str__(self):
        return f"Entity<{self.path}>"

    @property
    def path_codes(self):
        return [code for code in self.path.split("/") if code]

    def ancestor_paths(self):
        """Paths of the entity and every ancestor, root first."""
        codes = self.path_codes
        return ["/".join(codes[: index + 1]) for index in range(len(codes))]

    def get_ancestors(self):
        return Entity.objects.filter(path__in=self.ancestor_paths()[:-1]).order_by("depth")

    def get_descendants(self):
        return Entity.objects.filter(path__startswith=f"{self.path}/")

    def sku_prefix(self) -> str:
        return "-".join(self.path_codes)

    @classmethod
    def create_master(cls, code: str, name: str, **attributes) -> "Entity":
        code = code.upper()
        return cls.objects.create(code=code, name=name, type=cls.Type.MASTER, path=code, depth=0, **attributes)

    def create_child(self, code: str, name: str, entity_type=None, **attributes) -> "Entity":
        code = code.upper()
        if entity_type is None:
            entity_type = self.Type.FACADE if self.type == self.Type.MASTER else self.Type.DROPSHIP
        return Entity.objects.create(
            code=code,
            name=name,
            type=entity_type,
            parent=self,
            path=f"{self.path}/{code}",
            depth=self.depth + 1,
            **attributes,
        )


class PermissionMatrix(models.Model):
    class Source(models.TextChoices):
        INHERITED = "inherited", "Inherited"
        EXPLICIT = "explicit", "Explicit"
        TRAINED = "trained", "Trained"

    entity = models.ForeignKey(Entity, on_delete=models.CASCADE, related_name="permissions")
    key = models.CharField(max_length=150)
    scope = models.CharField(max_length=150, blank=True, null=True)
    allowed = models.BooleanField(default=False)
    locked = models.BooleanField(default=False, help_text="Descendants cannot override a locked decision.")
    source = models.CharField(max_length=20, choices=Source.choices, default=Source.EXPLICIT)
    set_by_entity = models.ForeignKey(
        Entity,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="+",
    )
    trained_at = models.DateTimeField(null=True, blank=True)
    trained_route = models.CharField(max_length=255, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "commerce_permission_matrix"
        ordering = ["entity_id", "key"]
        constraints = [
            models.UniqueConstraint(
                fields=["entity", "key", "scope"],
                name="unique_permission_entity_key_scope",
            ),
            models.UniqueConstraint(
                fields=["entity", "key"],
                condition=Q(scope__isnull=True),
                name="unique_permission_entity_key_unscoped",
            ),
        ]
        indexes = [
            models.Index(fields=["key", "entity"], name="permission_key_entity_idx"),
        ]

    def __str__(self):
        state = "allow" if self.allowed else "deny"
        return f"PermissionMatrix<{self.entity_id}:{self.key}:{state}{' locked' if self.locked else ''}>"


class PermissionRequest(models.Model):
    """Request logged while a permission is undefined, waiting for an operator decision."""

    class Status(models.TextChoices):
        ALLOWED = "allowed", "Allowed"
        DENIED = "denied", "Denied"
        PENDING = "pending", "Pending"

    SENSITIVE_KEYS = frozenset({
        "password",
        "password_confirmation",
        "token",
        "api_key",
        "secret",
        "credit_card",
        "card_number",
        "cvv",
        "ssn",
    })
    MAX_REQUEST_DATA_SIZE = 10000

    entity = models.ForeignKey(Entity, on_delete=models.CASCADE, related_name="permission_requests")
    method = models.CharField(max_length=10)
    route = models.CharField(max_length=500)
    action = models.CharField(max_length=150)
    scope = models.CharField(max_length=150, blank=True, null=True)
    request_data = models.JSONField(default=dict, blank=True)
    user_agent = models.TextField(blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.PENDING)
    was_trained = models.BooleanField(default=False)
    trained_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_permission_request"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["entity", "action", "was_trained"], name="permission_request_lookup_idx"),
        ]

    @classmethod
    def sanitise_request_data(cls, data) -> dict:
        cleaned = {key: value for key, value in dict(data or {}).items() if key not in cls.SENSITIVE_KEYS}
        encoded = json.dumps(cleaned, default=str)
        if len(encoded) > cls.MAX_REQUEST_DATA_SIZE:
            return {"_truncated": True, "_size": len(encoded)}
        return cleaned


class BundleHash(models.Model):
    """Bundle discount keyed by the order-independent hash of its base SKUs."""

    hash = models.CharField(max_length=64)
    base_skus = models.JSONField(default=list)
    entity = models.ForeignKey(Entity, on_delete=models.CASCADE, related_name="bundle_hashes")
    name = models.CharField(max_length=200, blank=True)
    coupon_code = models.CharField(max_length=50, blank=True)
    fixed_price = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    discount_percent = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, null=True, blank=True)
    min_quantity = models.PositiveIntegerField(default=1)
    valid_from = models.DateTimeField(null=True, blank=True)
    valid_until = models.DateTimeField(null=True, blank=True)
    active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_bundle_hash"
        constraints = [
            models.UniqueConstraint(fields=["hash", "entity"], name="unique_bundle_hash_per_entity"),
        ]

    def __str__(self):
        return f"BundleHash<{self.hash[:12]}:{self.entity_id}>"

    @staticmethod
    def compute_hash(base_skus) -> str:
        return hash_bundle(base_skus)

    def is_valid(self, now=None) -> bool:
        now = now or timezone.now()
        if not self.active:
            return False
        if self.valid_from and self.valid_from > now:
            return False
        if self.valid_until and self.valid_until < now:
            return False
        return True

    @classmethod
    def find_by_hash(cls, hash_value: str, entity):
        now = timezone.now()
        candidates = cls.objects.filter(hash=hash_value, entity=entity, active=True)
        for bundle in candidates:
            if bundle.is_valid(now):
                return bundle
        return None

    @classmethod
    def find_with_hierarchy(cls, hash_value: str, entity: Entity):
        """Look up the discount on the entity, then on each ancestor nearest first."""
        now = timezone.now()
        rows = cls.objects.filter(
            hash=hash_value,
            active=True,
            entity__path__in=entity.ancestor_paths(),
        ).select_related("entity")
        for bundle in sorted(rows, key=lambda row: row.entity.depth, reverse=True):
            if bundle.is_valid(now):
                return bundle
        return None

    @classmethod
    def create_from_skus(cls, base_skus, entity: Entity, **attributes) -> "BundleHash":
        normalised = sorted(sku.strip().upper() for sku in base_skus)
        return cls.objects.create(hash=cls.compute_hash(normalised), base_skus=normalised, entity=entity, **attributes)

    def calculate_discount(self, subtotal: Decimal) -> Decimal:
        subtotal = Decimal(subtotal)
        if self.fixed_price is not None:
            return max(ZERO, subtotal - self.fixed_price)
        if self.discount_amount is not None:
            return min(subtotal, self.discount_amount)
        if self.discount_percent is not None:
            return (subtotal * self.discount_percent / Decimal("100")).quantize(Decimal("0.01"))
        return ZERO

    def final_price(self, subtotal: Decimal) -> Decimal:
        if self.fixed_price is not None:
            return self.fixed_price
        return Decimal(subtotal) - self.calculate_discount(subtotal)


class Referral(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        CONVERTED = "converted", "Converted"
        QUALIFIED = "qualified", "Qualified"
        DISQUALIFIED = "disqualified", "Disqualified"

    referrer = models.ForeignKey(User, on_delete=models.CASCADE, related_name="referrals_made")
    referee = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="referrals_received",
    )
    code = models.CharField(max_length=50)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    commission_rate = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Percentage override; defaults to the standard rate when blank.",
    )
    signed_up_at = models.DateTimeField(null=True, blank=True)
    first_purchase_at = models.DateTimeField(null=True, blank=True)
    qualified_at = models.DateTimeField(null=True, blank=True)
    matured_at = models.DateTimeField(null=True, blank=True)
    disqualified_at = models.DateTimeField(null=True, blank=True)
    disqualification_reason = models.CharField(max_length=255, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_referral"
        ordering = ["-created_at"]


class ReferralPayout(models.Model):
    class Status(models.TextChoices):
        REQUESTED = "requested", "Requested"
        PROCESSING = "processing", "Processing"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        CANCELLED = "cancelled", "Cancelled"

    class Method(models.TextChoices):
        BTC = "btc", "Bitcoin"
        ACCOUNT_CREDIT = "account_credit", "Account credit"

    MINIMUM_PAYOUT = {
        Method.BTC: Decimal("10.00"),
        Method.ACCOUNT_CREDIT: Decimal("0.01"),
    }

    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="referral_payouts")
    payout_number = models.CharField(max_length=50, unique=True)
    method = models.CharField(max_length=20, choices=Method.choices)
    btc_address = models.CharField(max_length=100, blank=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.REQUESTED)
    requested_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.CharField(max_length=255, blank=True)

    class Meta:
        db_table = "commerce_referral_payout"
        ordering = ["-requested_at"]

    @staticmethod
    def generate_payout_number() -> str:
        return f"PAY-{timezone.now():%Y%m%d}-{secrets.token_hex(3).upper()}"


class ReferralCommission(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        MATURED = "matured", "Matured"
        PAID = "paid", "Paid"
        CANCELLED = "cancelled", "Cancelled"

    DEFAULT_COMMISSION_RATE = Decimal("10.00")
    MATURATION_CRYPTO_DAYS = 14
    MATURATION_CARD_DAYS = 90

    referral = models.ForeignKey(Referral, on_delete=models.CASCADE, related_name="commissions")
    referrer = models.ForeignKey(User, on_delete=models.CASCADE, related_name="referral_commissions")
    order = models.OneToOneField(Order, on_delete=models.CASCADE, related_name="referral_commission")
    invoice = models.ForeignKey(Invoice, on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    order_amount = models.DecimalField(max_digits=12, decimal_places=2)
    commission_rate = models.DecimalField(max_digits=5, decimal_places=2)
    commission_amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default=_default_currency)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    matures_at = models.DateTimeField()
    matured_at = models.DateTimeField(null=True, blank=True)
    payout = models.ForeignKey(
        ReferralPayout,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="commissions",
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_referral_commission"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "matures_at"], name="commission_maturity_idx"),
        ]


class UsageMeter(models.Model):
    class Aggregation(models.TextChoices):
        SUM = "sum", "Sum"
        MAX = "max", "Max"
        LAST = "last_value", "Last value"

    code = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=200)
    stripe_price_id = models.CharField(max_length=255, blank=True)
    aggregation_type = models.CharField(max_length=20, choices=Aggregation.choices, default=Aggregation.SUM)
    unit_price = models.DecimalField(max_digits=12, decimal_places=4, default=ZERO)
    currency = models.CharField(max_length=3, default=_default_currency)
    unit_label = models.CharField(max_length=50, blank=True)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "commerce_usage_meter"
        ordering = ["code"]

    def __str__(self):
        return f"UsageMeter<{self.code}>"


class SubscriptionUsage(models.Model):
    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="usage_records")
    meter = models.ForeignKey(UsageMeter, on_delete=models.PROTECT, related_name="usage_records")
    quantity = models.PositiveIntegerField()
    period_start = models.DateTimeField()
    period_end = models.DateTimeField()
    idempotency_key = models.CharField(max_length=255, blank=True, null=True, unique=True)
    stripe_usage_record_id = models.CharField(max_length=255, blank=True)
    synced_at = models.DateTimeField(null=True, blank=True)
    billed = models.BooleanField(default=False)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "commerce_subscription_usage"
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["subscription", "synced_at"], name="usage_sync_idx"),
        ]
