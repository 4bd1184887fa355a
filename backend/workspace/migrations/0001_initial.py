import uuid

from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Workspace',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, help_text='Public identifier used in billing API routes', primary_key=True, serialize=False)),
                ('name', models.CharField(help_text='Display name shown on invoices and in the admin', max_length=200)),
                ('billing_name', models.CharField(blank=True, help_text='Legal name printed on invoices', max_length=200)),
                ('billing_email', models.EmailField(blank=True, help_text="Invoice recipient; the owner's email is used when blank", max_length=254)),
                ('stripe_customer_id', models.CharField(blank=True, help_text='Stripe customer (cus_...)', max_length=255, null=True)),
                ('btcpay_customer_id', models.CharField(blank=True, help_text='Buyer reference sent with BTCPay invoices', max_length=255, null=True)),
                ('is_active', models.BooleanField(default=True, help_text='False while billing access is suspended')),
                ('suspension_reason', models.TextField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('owner', models.ForeignKey(help_text='Billing owner; receives payment and dunning notices', on_delete=django.db.models.deletion.CASCADE, related_name='owned_workspaces', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'verbose_name': 'Workspace',
                'verbose_name_plural': 'Workspaces',
                'db_table': 'workspace',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['owner', 'is_active'], name='workspace_owner_active_idx'),
                    models.Index(fields=['created_at'], name='workspace_created_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Membership',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('role', models.CharField(choices=[('owner', 'Owner'), ('admin', 'Administrator'), ('member', 'Member'), ('viewer', 'Viewer')], help_text='Billing access level', max_length=20)),
                ('is_active', models.BooleanField(default=True, help_text='Inactive memberships grant no access')),
                ('assigned_at', models.DateTimeField(auto_now_add=True)),
                ('user', models.ForeignKey(help_text='Member holding the role', on_delete=django.db.models.deletion.CASCADE, related_name='workspace_memberships', to=settings.AUTH_USER_MODEL)),
                ('workspace', models.ForeignKey(help_text='Workspace the role applies to', on_delete=django.db.models.deletion.CASCADE, related_name='memberships', to='workspace.workspace')),
            ],
            options={
                'verbose_name': 'Workspace Membership',
                'verbose_name_plural': 'Workspace Memberships',
                'db_table': 'workspace_membership',
                'ordering': ['-assigned_at'],
                'indexes': [
                    models.Index(fields=['workspace', 'role', 'is_active'], name='membership_ws_role_idx'),
                    models.Index(fields=['user', 'is_active'], name='membership_user_active_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(condition=models.Q(('role', 'owner')), fields=('workspace',), name='unique_workspace_owner'),
                ],
                'unique_together': {('workspace', 'user')},
            },
        ),
    ]
