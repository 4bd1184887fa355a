from django.apps import AppConfig


class WorkspaceConfig(AppConfig):
    """Tenant model billed by the commerce app."""

    default_auto_field = 'django.db.models.BigAutoField'
    name = 'workspace'
    verbose_name = 'Billing tenants'
