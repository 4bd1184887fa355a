import uuid
from typing import Optional

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.db import models

User = get_user_model()


class WorkspaceQuerySet(models.QuerySet):
    def active(self):
        return self.filter(is_active=True)

    def suspended(self):
        return self.filter(is_active=False)

    def visible_to(self, user):
        """Workspaces the user owns or holds an active membership in."""
        return self.filter(
            models.Q(owner=user)
            | models.Q(memberships__user=user, memberships__is_active=True)
        ).distinct()


class Workspace(models.Model):
    """
    Billing tenant.

    Orders, subscriptions, invoices and payments all belong to a workspace.
    The owner is the contact for dunning and renewal notices. Gateway customer
    ids are stored here so repeat checkouts reuse the same customer.
    """

    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Public identifier used in billing API routes",
    )
    name = models.CharField(max_length=200, help_text="Display name shown on invoices and in the admin")
    owner = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='owned_workspaces',
        help_text="Billing owner; receives payment and dunning notices",
    )

    billing_name = models.CharField(max_length=200, blank=True, help_text="Legal name printed on invoices")
    billing_email = models.EmailField(blank=True, help_text="Invoice recipient; the owner's email is used when blank")

    stripe_customer_id = models.CharField(max_length=255, blank=True, null=True, help_text="Stripe customer (cus_...)")
    btcpay_customer_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Buyer reference sent with BTCPay invoices",
    )

    # Cleared again when an overdue balance is settled
    is_active = models.BooleanField(default=True, help_text="False while billing access is suspended")
    suspension_reason = models.TextField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = WorkspaceQuerySet.as_manager()

    class Meta:
        db_table = 'workspace'
        verbose_name = 'Workspace'
        verbose_name_plural = 'Workspaces'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['owner', 'is_active'], name='workspace_owner_active_idx'),
            models.Index(fields=['created_at'], name='workspace_created_idx'),
        ]

    def __str__(self):
        return f"{self.name} ({self.owner.username})"

    @property
    def billing_contact_email(self):
        return self.billing_email or self.owner.email

    def membership_for(self, user) -> Optional["Membership"]:
        return self.memberships.filter(user=user, is_active=True).first()

    def suspend(self, reason: str = "") -> None:
        self.is_active = False
        self.suspension_reason = reason
        self.save(update_fields=["is_active", "suspension_reason", "updated_at"])

    def reactivate(self) -> bool:
        """Lift a suspension; returns False when the workspace was not suspended."""
        if self.is_active:
            return False
        self.is_active = True
        self.suspension_reason = ""
        self.save(update_fields=["is_active", "suspension_reason", "updated_at"])
        return True

    def save(self, *args, **kwargs):
        is_new = self._state.adding
        super().save(*args, **kwargs)
        if is_new:
            Membership.objects.get_or_create(
                workspace=self,
                user=self.owner,
                defaults={"role": Membership.Role.OWNER, "is_active": True},
            )


class Membership(models.Model):
    """A user's role inside a workspace; owners and admins manage billing."""

    class Role(models.TextChoices):
        OWNER = 'owner', 'Owner'
        ADMIN = 'admin', 'Administrator'
        MEMBER = 'member', 'Member'
        VIEWER = 'viewer', 'Viewer'

    BILLING_MANAGERS = (Role.OWNER, Role.ADMIN)

    workspace = models.ForeignKey(
        Workspace,
        on_delete=models.CASCADE,
        related_name='memberships',
        help_text="Workspace the role applies to",
    )
    user = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='workspace_memberships',
        help_text="Member holding the role",
    )
    role = models.CharField(max_length=20, choices=Role.choices, help_text="Billing access level")
    is_active = models.BooleanField(default=True, help_text="Inactive memberships grant no access")
    assigned_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = 'workspace_membership'
        verbose_name = 'Workspace Membership'
        verbose_name_plural = 'Workspace Memberships'
        unique_together = ['workspace', 'user']
        ordering = ['-assigned_at']
        indexes = [
            models.Index(fields=['workspace', 'role', 'is_active'], name='membership_ws_role_idx'),
            models.Index(fields=['user', 'is_active'], name='membership_user_active_idx'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['workspace'],
                condition=models.Q(role='owner'),
                name='unique_workspace_owner',
            ),
        ]

    def __str__(self):
        return f"{self.user.username} @ {self.workspace.name} ({self.role})"

    @property
    def can_manage_billing(self):
        return self.role in self.BILLING_MANAGERS

    def clean(self):
        if self.role != self.Role.OWNER:
            return
        other_owners = Membership.objects.filter(workspace_id=self.workspace_id, role=self.Role.OWNER)
        if self.pk:
            other_owners = other_owners.exclude(pk=self.pk)
        if other_owners.exists():
            raise ValidationError("This workspace already has an owner.")
