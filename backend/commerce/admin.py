from django.contrib import admin, messages
from django.urls import reverse
from django.utils.html import format_html

from .exceptions import CreditNoteError
from .models import (
    BundleHash,
    Coupon,
    CouponUsage,
    CreditNote,
    Entity,
    ExchangeRate,
    Invoice,
    InvoiceItem,
    Order,
    OrderItem,
    Package,
    Payment,
    PaymentMethod,
    PermissionMatrix,
    PermissionRequest,
    Referral,
    ReferralCommission,
    ReferralPayout,
    Refund,
    Subscription,
    SubscriptionUsage,
    UsageMeter,
    WebhookEvent,
    WorkspacePackage,
)
from .services import credit_notes


def _workspace_link(obj):
    if not obj.workspace_id:
        return "-"
    url = reverse("admin:workspace_workspace_change", args=[obj.workspace_id])
    return format_html('<a href="{}">{}</a>', url, obj.workspace)


@admin.register(Package)
class PackageAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "monthly_price", "yearly_price", "currency", "is_active")
    list_filter = ("is_active", "currency")
    search_fields = ("code", "name", "stripe_price_id_monthly", "stripe_price_id_yearly")
    readonly_fields = ("created_at", "updated_at")


@admin.register(WorkspacePackage)
class WorkspacePackageAdmin(admin.ModelAdmin):
    list_display = ("id", "workspace_link", "package", "status", "source", "granted_at", "expires_at")
    list_filter = ("status", "package")
    search_fields = ("workspace__name", "package__code")
    raw_id_fields = ("workspace", "package")
    list_select_related = ("workspace", "package")

    @admin.display(description="Workspace")
    def workspace_link(self, obj):
        return _workspace_link(obj)


@admin.register(Subscription)
class SubscriptionAdmin(admin.ModelAdmin):
    """Subscriptions are driven by gateways and dunning; edits here bypass both."""

    list_display = (
        "id",
        "workspace_link",
        "package",
        "gateway",
        "status",
        "billing_cycle",
        "current_period_end",
        "cancel_at_period_end",
    )
    list_filter = ("status", "gateway", "billing_cycle", "cancel_at_period_end")
    search_fields = ("workspace__name", "gateway_subscription_id", "gateway_customer_id")
    raw_id_fields = ("workspace", "package", "workspace_package")
    readonly_fields = ("created_at", "updated_at")
    list_select_related = ("workspace", "package")
    fieldsets = (
        ("Ownership", {"fields": ("workspace", "package", "workspace_package")}),
        ("Gateway", {"fields": ("gateway", "gateway_subscription_id", "gateway_customer_id", "gateway_price_id")}),
        ("Lifecycle", {"fields": (
            "status",
            "billing_cycle",
            "current_period_start",
            "current_period_end",
            "trial_ends_at",
            "cancel_at_period_end",
            "cancelled_at",
            "cancellation_reason",
            "ended_at",
            "paused_at",
            "pause_count",
        )}),
        ("Metadata", {"fields": ("metadata", "created_at", "updated_at")}),
    )

    @admin.display(description="Workspace")
    def workspace_link(self, obj):
        return _workspace_link(obj)


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    raw_id_fields = ("package",)


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("order_number", "workspace_link", "status", "type", "total", "currency", "gateway", "created_at")
    list_filter = ("status", "type", "gateway", "currency")
    search_fields = ("order_number", "workspace__name", "gateway_session_id", "billing_email")
    raw_id_fields = ("workspace", "user", "coupon")
    readonly_fields = ("created_at", "updated_at", "paid_at")
    list_select_related = ("workspace",)
    inlines = [OrderItemInline]

    @admin.display(description="Workspace")
    def workspace_link(self, obj):
        return _workspace_link(obj)


class InvoiceItemInline(admin.TabularInline):
    model = InvoiceItem
    extra = 0
    raw_id_fields = ("order_item",)


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = (
        "invoice_number",
        "workspace_link",
        "status",
        "total",
        "amount_due",
        "due_date",
        "charge_attempts",
        "next_charge_attempt",
    )
    list_filter = ("status", "auto_charge", "currency")
    search_fields = ("invoice_number", "workspace__name", "billing_email")
    raw_id_fields = ("workspace", "order", "subscription", "payment")
    readonly_fields = ("created_at", "updated_at")
    list_select_related = ("workspace",)
    inlines = [InvoiceItemInline]

    @admin.display(description="Workspace")
    def workspace_link(self, obj):
        return _workspace_link(obj)


class RefundInline(admin.TabularInline):
    model = Refund
    extra = 0
    readonly_fields = ("gateway_refund_id", "amount", "currency", "status", "reason", "created_at")
    can_delete = False


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    """Read-only audit trail of gateway payments."""

    list_display = ("id", "workspace_link", "gateway", "gateway_payment_id", "amount", "refunded_amount", "status", "paid_at")
    list_filter = ("status", "gateway", "currency")
    search_fields = ("gateway_payment_id", "workspace__name", "order__order_number")
    raw_id_fields = ("workspace", "order", "invoice")
    readonly_fields = ("gateway_response", "created_at")
    list_select_related = ("workspace",)
    inlines = [RefundInline]

    @admin.display(description="Workspace")
    def workspace_link(self, obj):
        return _workspace_link(obj)


@admin.register(PaymentMethod)
class PaymentMethodAdmin(admin.ModelAdmin):
    list_display = ("id", "workspace", "gateway", "brand", "last_four", "is_default", "is_active")
    list_filter = ("gateway", "is_default", "is_active")
    search_fields = ("gateway_payment_method_id", "workspace__name")
    raw_id_fields = ("workspace",)


@admin.register(Refund)
class RefundAdmin(admin.ModelAdmin):
    list_display = ("id", "payment", "amount", "currency", "status", "reason", "created_at")
    list_filter = ("status",)
    search_fields = ("gateway_refund_id", "payment__gateway_payment_id")
    raw_id_fields = ("payment",)


@admin.register(CreditNote)
class CreditNoteAdmin(admin.ModelAdmin):
    list_display = ("reference_number", "workspace_link", "reason", "amount", "amount_used", "currency", "status", "created_at")
    list_filter = ("status", "reason", "currency")
    search_fields = ("reference_number", "workspace__name")
    raw_id_fields = ("workspace", "subscription", "refund", "applied_to_invoice", "issued_by")
    readonly_fields = ("amount_used", "applied_to_invoice", "issued_at", "applied_at", "voided_at", "created_at")
    list_select_related = ("workspace",)
    actions = ["void_credit_notes"]

    @admin.display(description="Workspace")
    def workspace_link(self, obj):
        return _workspace_link(obj)

    @admin.action(description="Void unused credit notes")
    def void_credit_notes(self, request, queryset):
        voided = 0
        for credit_note in queryset:
            try:
                credit_notes.void(credit_note)
            except CreditNoteError as exc:
                self.message_user(request, f"{credit_note.reference_number}: {exc}", messages.WARNING)
                continue
            voided += 1
        self.message_user(request, f"Voided {voided} credit note(s).", messages.SUCCESS)


@admin.register(Coupon)
class CouponAdmin(admin.ModelAdmin):
    list_display = ("code", "type", "value", "applies_to", "used_count", "max_uses", "valid_until", "is_active")
    list_filter = ("type", "applies_to", "duration", "is_active")
    search_fields = ("code", "name")
    readonly_fields = ("used_count", "created_at")


@admin.register(CouponUsage)
class CouponUsageAdmin(admin.ModelAdmin):
    list_display = ("coupon", "workspace", "order", "discount_amount", "created_at")
    raw_id_fields = ("coupon", "workspace", "order")


@admin.register(ExchangeRate)
class ExchangeRateAdmin(admin.ModelAdmin):
    list_display = ("base_currency", "target_currency", "rate", "source", "fetched_at")
    list_filter = ("source", "base_currency")
    ordering = ("-fetched_at",)


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    """Deliveries are immutable; replay happens by re-sending from the gateway."""

    list_display = ("event_id", "gateway", "event_type", "status", "attempts", "http_status_code", "received_at")
    list_filter = ("gateway", "status", "event_type")
    search_fields = ("event_id", "event_type")
    readonly_fields = [field.name for field in WebhookEvent._meta.fields]

    def has_add_permission(self, request):
        return False


@admin.register(Entity)
class EntityAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "type", "path", "depth", "domain", "is_active")
    list_filter = ("type", "is_active")
    search_fields = ("code", "name", "domain", "path")
    raw_id_fields = ("parent", "workspace")
    readonly_fields = ("path", "depth", "created_at")


@admin.register(PermissionMatrix)
class PermissionMatrixAdmin(admin.ModelAdmin):
    list_display = ("entity", "key", "scope", "allowed", "locked", "source", "trained_at")
    list_filter = ("allowed", "locked", "source")
    search_fields = ("key", "scope", "entity__code")
    raw_id_fields = ("entity", "set_by_entity")


@admin.register(PermissionRequest)
class PermissionRequestAdmin(admin.ModelAdmin):
    list_display = ("entity", "method", "action", "scope", "status", "was_trained", "created_at")
    list_filter = ("status", "was_trained", "method")
    search_fields = ("action", "route", "entity__code")
    raw_id_fields = ("entity", "user")
    readonly_fields = ("request_data", "user_agent", "ip_address", "created_at")


@admin.register(BundleHash)
class BundleHashAdmin(admin.ModelAdmin):
    list_display = ("hash", "entity", "name", "fixed_price", "discount_percent", "active")
    list_filter = ("active",)
    search_fields = ("hash", "name", "coupon_code")
    raw_id_fields = ("entity",)


@admin.register(Referral)
class ReferralAdmin(admin.ModelAdmin):
    list_display = ("code", "referrer", "referee", "status", "commission_rate", "created_at")
    list_filter = ("status",)
    search_fields = ("code", "referrer__username", "referee__username")
    raw_id_fields = ("referrer", "referee")


@admin.register(ReferralCommission)
class ReferralCommissionAdmin(admin.ModelAdmin):
    list_display = ("referrer", "order", "commission_amount", "currency", "status", "matures_at")
    list_filter = ("status",)
    raw_id_fields = ("referral", "referrer", "order", "invoice", "payout")


@admin.register(ReferralPayout)
class ReferralPayoutAdmin(admin.ModelAdmin):
    list_display = ("payout_number", "user", "method", "amount", "currency", "status", "requested_at")
    list_filter = ("status", "method")
    search_fields = ("payout_number", "user__username", "btc_address")
    raw_id_fields = ("user",)


@admin.register(UsageMeter)
class UsageMeterAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "aggregation_type", "unit_price", "currency", "is_active")
    list_filter = ("aggregation_type", "is_active")
    search_fields = ("code", "name", "stripe_price_id")


@admin.register(SubscriptionUsage)
class SubscriptionUsageAdmin(admin.ModelAdmin):
    list_display = ("subscription", "meter", "quantity", "period_start", "synced_at", "billed")
    list_filter = ("meter", "billed")
    raw_id_fields = ("subscription", "meter")
