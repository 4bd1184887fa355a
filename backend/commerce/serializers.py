"""DRF serializers for the commerce API."""
from __future__ import annotations

from typing import Any, Dict

from rest_framework import serializers

from commerce.models import (
    BillingCycle,
    CreditNote,
    Invoice,
    InvoiceItem,
    Order,
    OrderItem,
    Package,
    Payment,
    PermissionMatrix,
    PermissionRequest,
    Subscription,
)
from commerce.services.subscriptions import SubscriptionService


class PackageSerializer(serializers.ModelSerializer):
    class Meta:
        model = Package
        fields = ["id", "code", "name", "monthly_price", "yearly_price", "currency", "features"]
        read_only_fields = fields


class OrderItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderItem
        fields = ["id", "sku", "name", "quantity", "unit_price", "line_total", "billing_cycle"]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "order_number",
            "status",
            "type",
            "billing_cycle",
            "currency",
            "subtotal",
            "discount_amount",
            "tax_amount",
            "total",
            "gateway",
            "failure_reason",
            "paid_at",
            "created_at",
            "items",
        ]
        read_only_fields = fields


class InvoiceItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = InvoiceItem
        fields = ["id", "description", "quantity", "unit_price", "line_total", "tax_rate", "tax_amount"]
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    items = InvoiceItemSerializer(many=True, read_only=True)

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "status",
            "currency",
            "subtotal",
            "discount_amount",
            "tax_amount",
            "tax_rate",
            "total",
            "amount_paid",
            "credit_applied",
            "amount_due",
            "issue_date",
            "due_date",
            "paid_at",
            "charge_attempts",
            "next_charge_attempt",
            "items",
        ]
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            "id",
            "gateway",
            "currency",
            "amount",
            "refunded_amount",
            "status",
            "failure_reason",
            "payment_method_brand",
            "payment_method_last4",
            "paid_at",
            "created_at",
        ]
        read_only_fields = fields


class CreditNoteSerializer(serializers.ModelSerializer):
    remaining_amount = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = CreditNote
        fields = [
            "id",
            "reference_number",
            "status",
            "reason",
            "currency",
            "amount",
            "amount_used",
            "remaining_amount",
            "description",
            "issued_at",
            "applied_at",
            "created_at",
        ]
        read_only_fields = fields


class SubscriptionSerializer(serializers.ModelSerializer):
    package = PackageSerializer(read_only=True)
    pending_plan_change = serializers.SerializerMethodField()

    class Meta:
        model = Subscription
        fields = [
            "id",
            "package",
            "gateway",
            "status",
            "billing_cycle",
            "current_period_start",
            "current_period_end",
            "trial_ends_at",
            "cancel_at_period_end",
            "cancelled_at",
            "paused_at",
            "pause_count",
            "pending_plan_change",
        ]
        read_only_fields = fields

    def get_pending_plan_change(self, obj: Subscription):
        return SubscriptionService.pending_plan_change(obj)


class PlanChangeSerializer(serializers.Serializer):
    package = serializers.SlugRelatedField(slug_field="code", queryset=Package.objects.filter(is_active=True))
    billing_cycle = serializers.ChoiceField(choices=BillingCycle.choices, required=False)
    immediate = serializers.BooleanField(default=False)
    prorate = serializers.BooleanField(default=True)


class CancelSubscriptionSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    immediately = serializers.BooleanField(default=False)


class PackageGrantSerializer(serializers.Serializer):
    workspace_id = serializers.UUIDField()
    package = serializers.SlugRelatedField(slug_field="code", queryset=Package.objects.all())
    expires_at = serializers.DateTimeField(required=False, allow_null=True)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class PermissionRequestSerializer(serializers.ModelSerializer):
    entity_code = serializers.CharField(source="entity.code", read_only=True)

    class Meta:
        model = PermissionRequest
        fields = [
            "id",
            "entity",
            "entity_code",
            "method",
            "route",
            "action",
            "scope",
            "request_data",
            "status",
            "created_at",
        ]
        read_only_fields = fields


class PermissionMatrixSerializer(serializers.ModelSerializer):
    entity_code = serializers.CharField(source="entity.code", read_only=True)

    class Meta:
        model = PermissionMatrix
        fields = ["id", "entity", "entity_code", "key", "scope", "allowed", "locked", "source", "trained_at"]
        read_only_fields = fields


class MatrixDecisionSerializer(serializers.Serializer):
    entity = serializers.IntegerField()
    key = serializers.CharField(max_length=150)
    scope = serializers.CharField(max_length=150, required=False, allow_null=True, allow_blank=True, default=None)
    allowed = serializers.BooleanField()
    route = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        attrs["scope"] = attrs.get("scope") or None
        return attrs


class MatrixUnlockSerializer(serializers.Serializer):
    entity = serializers.IntegerField()
    key = serializers.CharField(max_length=150)
    scope = serializers.CharField(max_length=150, required=False, allow_null=True, allow_blank=True, default=None)

    def validate(self, attrs: Dict[str, Any]) -> Dict[str, Any]:
        attrs["scope"] = attrs.get("scope") or None
        return attrs
