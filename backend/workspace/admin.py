"""Admin pages for billing tenants.

Support staff cross-check the gateway customer references shown here against
the Stripe and BTCPay dashboards.
"""

from django.contrib import admin, messages

from .models import Membership, Workspace


class MembershipInline(admin.TabularInline):
    model = Membership
    extra = 0
    fields = ['user', 'role', 'is_active', 'assigned_at']
    readonly_fields = ['assigned_at']
    raw_id_fields = ['user']

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('user')


@admin.register(Workspace)
class WorkspaceAdmin(admin.ModelAdmin):
    list_display = ['name', 'owner', 'billing_contact_email', 'stripe_customer_id', 'is_active', 'created_at']
    list_filter = ['is_active', 'created_at']
    search_fields = ['name', 'owner__username', 'billing_email', 'stripe_customer_id', 'btcpay_customer_id']
    readonly_fields = ['id', 'created_at', 'updated_at']
    raw_id_fields = ['owner']
    inlines = [MembershipInline]
    actions = ['reactivate_workspaces']
    fieldsets = (
        (None, {'fields': ('id', 'name', 'owner')}),
        ('Access', {'fields': ('is_active', 'suspension_reason')}),
        ('Billing', {'fields': ('billing_name', 'billing_email', 'stripe_customer_id', 'btcpay_customer_id')}),
        ('Timestamps', {'fields': ('created_at', 'updated_at'), 'classes': ('collapse',)}),
    )

    @admin.action(description="Lift billing suspension")
    def reactivate_workspaces(self, request, queryset):
        lifted = sum(1 for workspace in queryset.suspended() if workspace.reactivate())
        self.message_user(request, f"Reactivated {lifted} workspace(s).", messages.SUCCESS)


@admin.register(Membership)
class MembershipAdmin(admin.ModelAdmin):
    list_display = ['user', 'workspace', 'role', 'can_manage_billing', 'is_active', 'assigned_at']
    list_filter = ['role', 'is_active']
    search_fields = ['user__username', 'workspace__name']
    raw_id_fields = ['user', 'workspace']
    list_select_related = ['user', 'workspace']

    @admin.display(boolean=True, description="Billing manager")
    def can_manage_billing(self, obj):
        return obj.can_manage_billing
