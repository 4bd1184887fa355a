"""Workspace-scoped access checks for the billing API.

Callers who are not active members of a workspace get 404, the same answer
as for a workspace that does not exist.
"""
import logging
from enum import Enum

from django.http import Http404
from rest_framework.exceptions import NotAuthenticated, PermissionDenied

from workspace.models import Workspace

logger = logging.getLogger(__name__)


class BillingAccess(Enum):
    VIEW = "view"         # Any active member
    MANAGE = "manage"     # Owners and admins


def get_workspace_for_member(user, workspace_id, access: BillingAccess = BillingAccess.VIEW) -> Workspace:
    """Workspace the user may see, or 404; managing it additionally needs an owner/admin role."""
    if not user or not user.is_authenticated:
        raise NotAuthenticated("Authentication required.")

    workspace = Workspace.objects.visible_to(user).filter(pk=workspace_id).first()
    if workspace is None:
        logger.info("User %s denied access to workspace %s (not a member)", user.pk, workspace_id)
        raise Http404("Workspace not found.")

    if access is BillingAccess.MANAGE and workspace.owner_id != user.pk:
        membership = workspace.membership_for(user)
        if membership is None or not membership.can_manage_billing:
            raise PermissionDenied("You do not have permission to manage billing for this workspace.")
    return workspace
