"""FilterSet definitions for commerce endpoints."""
from __future__ import annotations

import django_filters

from commerce.models import Invoice, Order, Payment


class OrderFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    type = django_filters.CharFilter(field_name="type", lookup_expr="iexact")
    gateway = django_filters.CharFilter(field_name="gateway", lookup_expr="iexact")
    package = django_filters.CharFilter(field_name="items__package__code", lookup_expr="iexact", distinct=True)
    created_after = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="gte")
    created_before = django_filters.DateTimeFilter(field_name="created_at", lookup_expr="lte")

    class Meta:
        model = Order
        fields = ["status", "type", "gateway"]


class InvoiceFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    unpaid = django_filters.BooleanFilter(method="filter_unpaid")
    subscription = django_filters.NumberFilter(field_name="subscription_id")
    issued_after = django_filters.DateFilter(field_name="issue_date", lookup_expr="gte")
    issued_before = django_filters.DateFilter(field_name="issue_date", lookup_expr="lte")
    due_before = django_filters.DateFilter(field_name="due_date", lookup_expr="lte")

    class Meta:
        model = Invoice
        fields = ["status", "subscription"]

    def filter_unpaid(self, queryset, name, value):
        if value is None:
            return queryset
        if value:
            return queryset.filter(status__in=Invoice.UNPAID_STATUSES)
        return queryset.exclude(status__in=Invoice.UNPAID_STATUSES)


class PaymentFilter(django_filters.FilterSet):
    status = django_filters.CharFilter(field_name="status", lookup_expr="iexact")
    gateway = django_filters.CharFilter(field_name="gateway", lookup_expr="iexact")
    order_number = django_filters.CharFilter(field_name="order__order_number", lookup_expr="iexact")

    class Meta:
        model = Payment
        fields = ["status", "gateway"]
