from decimal import Decimal

import commerce.models
from django.conf import settings
import django.core.validators
from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


GATEWAY_CHOICES = [('stripe', 'Stripe'), ('btcpay', 'BTCPay')]
BILLING_CYCLE_CHOICES = [('monthly', 'Monthly'), ('yearly', 'Yearly')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('workspace', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Package',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(help_text="Stable package identifier (e.g. 'pro').", max_length=64, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('monthly_price', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=10, validators=[django.core.validators.MinValueValidator(Decimal('0.00'))])),
                ('yearly_price', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=10, validators=[django.core.validators.MinValueValidator(Decimal('0.00'))])),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('stripe_price_id_monthly', models.CharField(blank=True, max_length=255)),
                ('stripe_price_id_yearly', models.CharField(blank=True, max_length=255)),
                ('features', models.JSONField(blank=True, default=dict, help_text='Entitlement limits granted by the package.')),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'db_table': 'commerce_package',
                'ordering': ['monthly_price', 'code'],
            },
        ),
        migrations.CreateModel(
            name='Coupon',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(blank=True, max_length=200)),
                ('description', models.TextField(blank=True)),
                ('type', models.CharField(choices=[('percentage', 'Percentage'), ('fixed_amount', 'Fixed amount')], default='percentage', max_length=20)),
                ('value', models.DecimalField(decimal_places=2, max_digits=10)),
                ('min_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('max_discount', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('applies_to', models.CharField(choices=[('all', 'All packages'), ('packages', 'Selected packages')], default='all', max_length=20)),
                ('package_ids', models.JSONField(blank=True, default=list)),
                ('max_uses', models.PositiveIntegerField(blank=True, null=True)),
                ('max_uses_per_workspace', models.PositiveIntegerField(default=1)),
                ('used_count', models.PositiveIntegerField(default=0)),
                ('duration', models.CharField(choices=[('once', 'Once'), ('repeating', 'Repeating'), ('forever', 'Forever')], default='once', max_length=20)),
                ('duration_months', models.PositiveIntegerField(blank=True, null=True)),
                ('valid_from', models.DateTimeField(blank=True, null=True)),
                ('valid_until', models.DateTimeField(blank=True, null=True)),
                ('is_active', models.BooleanField(default=True)),
                ('stripe_coupon_id', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
            ],
            options={
                'db_table': 'commerce_coupon',
                'ordering': ['code'],
            },
        ),
        migrations.CreateModel(
            name='ExchangeRate',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('base_currency', models.CharField(max_length=3)),
                ('target_currency', models.CharField(max_length=3)),
                ('rate', models.DecimalField(decimal_places=8, max_digits=16)),
                ('source', models.CharField(default='manual', max_length=30)),
                ('fetched_at', models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                'db_table': 'commerce_exchange_rate',
                'ordering': ['-fetched_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('base_currency', 'target_currency'), name='unique_exchange_rate_pair'),
                ],
            },
        ),
        migrations.CreateModel(
            name='UsageMeter',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=64, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('stripe_price_id', models.CharField(blank=True, max_length=255)),
                ('aggregation_type', models.CharField(choices=[('sum', 'Sum'), ('max', 'Max'), ('last_value', 'Last value')], default='sum', max_length=20)),
                ('unit_price', models.DecimalField(decimal_places=4, default=Decimal('0.00'), max_digits=12)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('unit_label', models.CharField(blank=True, max_length=50)),
                ('is_active', models.BooleanField(default=True)),
            ],
            options={
                'db_table': 'commerce_usage_meter',
                'ordering': ['code'],
            },
        ),
        migrations.CreateModel(
            name='Entity',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=50, unique=True)),
                ('name', models.CharField(max_length=200)),
                ('type', models.CharField(choices=[('m1', 'Master company'), ('m2', 'Facade / storefront'), ('m3', 'Dropshipper')], max_length=2)),
                ('path', models.CharField(db_index=True, help_text='Materialized path of codes, e.g. ROOT/SHOP.', max_length=500)),
                ('depth', models.PositiveSmallIntegerField(default=0)),
                ('domain', models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('settings', models.JSONField(blank=True, default=dict)),
                ('is_active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('parent', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='children', to='commerce.entity')),
                ('workspace', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='commerce_entities', to='workspace.workspace')),
            ],
            options={
                'verbose_name_plural': 'Entities',
                'db_table': 'commerce_entity',
                'ordering': ['path'],
            },
        ),
        migrations.CreateModel(
            name='WorkspacePackage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('status', models.CharField(choices=[('active', 'Active'), ('suspended', 'Suspended'), ('revoked', 'Revoked')], default='active', max_length=20)),
                ('granted_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('expires_at', models.DateTimeField(blank=True, null=True)),
                ('suspended_at', models.DateTimeField(blank=True, null=True)),
                ('revoked_at', models.DateTimeField(blank=True, null=True)),
                ('cycle_boosts', models.JSONField(blank=True, default=dict, help_text='Boosts that only last for the current billing cycle; cleared on renewal.')),
                ('source', models.CharField(blank=True, help_text='What granted the package (order, api, admin).', max_length=50)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('package', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='grants', to='commerce.package')),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='packages', to='workspace.workspace')),
            ],
            options={
                'db_table': 'commerce_workspace_package',
                'ordering': ['-granted_at'],
                'indexes': [
                    models.Index(fields=['workspace', 'status'], name='ws_package_status_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('workspace', 'package'), name='unique_workspace_package'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Subscription',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('gateway', models.CharField(choices=GATEWAY_CHOICES, max_length=20)),
                ('gateway_subscription_id', models.CharField(blank=True, max_length=255, null=True)),
                ('gateway_customer_id', models.CharField(blank=True, max_length=255, null=True)),
                ('gateway_price_id', models.CharField(blank=True, max_length=255, null=True)),
                ('status', models.CharField(choices=[('trialing', 'Trialing'), ('active', 'Active'), ('past_due', 'Past due'), ('paused', 'Paused'), ('cancelled', 'Cancelled'), ('incomplete', 'Incomplete'), ('expired', 'Expired')], default='active', max_length=20)),
                ('billing_cycle', models.CharField(choices=BILLING_CYCLE_CHOICES, default='monthly', max_length=10)),
                ('current_period_start', models.DateTimeField()),
                ('current_period_end', models.DateTimeField()),
                ('trial_ends_at', models.DateTimeField(blank=True, null=True)),
                ('cancel_at_period_end', models.BooleanField(default=False)),
                ('cancelled_at', models.DateTimeField(blank=True, null=True)),
                ('cancellation_reason', models.CharField(blank=True, max_length=255)),
                ('ended_at', models.DateTimeField(blank=True, null=True)),
                ('paused_at', models.DateTimeField(blank=True, null=True)),
                ('pause_count', models.PositiveIntegerField(default=0)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('package', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.PROTECT, related_name='subscriptions', to='commerce.package')),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='subscriptions', to='workspace.workspace')),
                ('workspace_package', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='subscriptions', to='commerce.workspacepackage')),
            ],
            options={
                'db_table': 'commerce_subscription',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['workspace', 'status'], name='subscription_ws_status_idx'),
                    models.Index(fields=['gateway', 'gateway_subscription_id'], name='subscription_gateway_idx'),
                    models.Index(fields=['status', 'current_period_end'], name='subscription_period_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Order',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_number', models.CharField(max_length=50, unique=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('paid', 'Paid'), ('failed', 'Failed'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('type', models.CharField(choices=[('new', 'New purchase'), ('renewal', 'Renewal'), ('upgrade', 'Upgrade'), ('downgrade', 'Downgrade')], default='new', max_length=20)),
                ('billing_cycle', models.CharField(choices=BILLING_CYCLE_CHOICES, default='monthly', max_length=10)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('display_currency', models.CharField(blank=True, max_length=3)),
                ('exchange_rate_used', models.DecimalField(blank=True, decimal_places=8, max_digits=16, null=True)),
                ('base_currency_total', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('subtotal', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('discount_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('tax_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('tax_rate', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=5)),
                ('tax_country', models.CharField(blank=True, max_length=2)),
                ('total', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('gateway', models.CharField(blank=True, choices=GATEWAY_CHOICES, max_length=20)),
                ('gateway_session_id', models.CharField(blank=True, help_text='Checkout session / gateway invoice id used to correlate webhooks.', max_length=255, null=True)),
                ('billing_name', models.CharField(blank=True, max_length=200)),
                ('billing_email', models.EmailField(blank=True, max_length=254)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('idempotency_key', models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ('failure_reason', models.CharField(blank=True, max_length=255)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('coupon', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='orders', to='commerce.coupon')),
                ('user', models.ForeignKey(blank=True, help_text='User who placed the order; used for referral attribution.', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='commerce_orders', to=settings.AUTH_USER_MODEL)),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='orders', to='workspace.workspace')),
            ],
            options={
                'db_table': 'commerce_order',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['gateway', 'gateway_session_id'], name='order_gateway_session_idx'),
                    models.Index(fields=['workspace', 'status'], name='order_ws_status_idx'),
                    models.Index(fields=['status', 'created_at'], name='order_status_created_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='OrderItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sku', models.CharField(blank=True, max_length=1024)),
                ('name', models.CharField(max_length=255)),
                ('quantity', models.PositiveIntegerField(default=1)),
                ('unit_price', models.DecimalField(decimal_places=2, max_digits=12)),
                ('line_total', models.DecimalField(decimal_places=2, max_digits=12)),
                ('billing_cycle', models.CharField(blank=True, choices=BILLING_CYCLE_CHOICES, max_length=10)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='items', to='commerce.order')),
                ('package', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='commerce.package')),
            ],
            options={
                'db_table': 'commerce_order_item',
                'ordering': ['id'],
            },
        ),
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('gateway', models.CharField(choices=GATEWAY_CHOICES, max_length=20)),
                ('gateway_payment_id', models.CharField(max_length=255)),
                ('gateway_customer_id', models.CharField(blank=True, max_length=255)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('fee', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('succeeded', 'Succeeded'), ('failed', 'Failed'), ('underpaid', 'Underpaid'), ('refunded', 'Refunded')], default='pending', max_length=20)),
                ('failure_reason', models.CharField(blank=True, max_length=255)),
                ('payment_method_type', models.CharField(blank=True, max_length=50)),
                ('payment_method_last4', models.CharField(blank=True, max_length=4)),
                ('payment_method_brand', models.CharField(blank=True, max_length=50)),
                ('refunded_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('gateway_response', models.JSONField(blank=True, default=dict, help_text='Raw gateway object kept for audit.')),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('order', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payments', to='commerce.order')),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payments', to='workspace.workspace')),
            ],
            options={
                'db_table': 'commerce_payment',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['workspace', 'status'], name='payment_ws_status_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('gateway', 'gateway_payment_id'), name='unique_payment_gateway_reference'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Invoice',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('invoice_number', models.CharField(max_length=50, unique=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('paid', 'Paid'), ('overdue', 'Overdue'), ('void', 'Void')], default='pending', max_length=20)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('subtotal', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('discount_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('tax_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('tax_rate', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=5)),
                ('tax_country', models.CharField(blank=True, max_length=2)),
                ('total', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('amount_paid', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('amount_due', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('issue_date', models.DateField(default=django.utils.timezone.localdate)),
                ('due_date', models.DateField(blank=True, null=True)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('billing_name', models.CharField(blank=True, max_length=200)),
                ('billing_email', models.EmailField(blank=True, max_length=254)),
                ('auto_charge', models.BooleanField(default=True, help_text='Dunning may retry the charge automatically.')),
                ('charge_attempts', models.PositiveIntegerField(default=0)),
                ('last_charge_attempt', models.DateTimeField(blank=True, null=True)),
                ('next_charge_attempt', models.DateTimeField(blank=True, null=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='invoices', to='commerce.order')),
                ('payment', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='settled_invoices', to='commerce.payment')),
                ('subscription', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='invoices', to='commerce.subscription')),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='invoices', to='workspace.workspace')),
            ],
            options={
                'db_table': 'commerce_invoice',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['workspace', 'status'], name='invoice_ws_status_idx'),
                    models.Index(fields=['status', 'next_charge_attempt'], name='invoice_retry_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount_due__gte', 0)), name='invoice_amount_due_non_negative'),
                ],
            },
        ),
        migrations.AddField(
            model_name='payment',
            name='invoice',
            field=models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payments', to='commerce.invoice'),
        ),
        migrations.CreateModel(
            name='InvoiceItem',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('description', models.CharField(max_length=255)),
                ('quantity', models.PositiveIntegerField(default=1)),
                ('unit_price', models.DecimalField(decimal_places=2, max_digits=12)),
                ('line_total', models.DecimalField(decimal_places=2, max_digits=12)),
                ('taxable', models.BooleanField(default=True)),
                ('tax_rate', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=5)),
                ('tax_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('invoice', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='items', to='commerce.invoice')),
                ('order_item', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='commerce.orderitem')),
            ],
            options={
                'db_table': 'commerce_invoice_item',
                'ordering': ['id'],
            },
        ),
        migrations.CreateModel(
            name='PaymentMethod',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('gateway', models.CharField(choices=GATEWAY_CHOICES, max_length=20)),
                ('gateway_payment_method_id', models.CharField(max_length=255)),
                ('gateway_customer_id', models.CharField(blank=True, max_length=255)),
                ('type', models.CharField(default='card', max_length=50)),
                ('brand', models.CharField(blank=True, max_length=50)),
                ('last_four', models.CharField(blank=True, max_length=4)),
                ('exp_month', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('exp_year', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('is_default', models.BooleanField(default=False)),
                ('is_active', models.BooleanField(default=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payment_methods', to='workspace.workspace')),
            ],
            options={
                'db_table': 'commerce_payment_method',
                'ordering': ['-is_default', '-created_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('gateway', 'gateway_payment_method_id'), name='unique_payment_method_gateway_reference'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Refund',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('gateway_refund_id', models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('succeeded', 'Succeeded'), ('failed', 'Failed')], default='pending', max_length=20)),
                ('reason', models.CharField(blank=True, max_length=50)),
                ('notes', models.TextField(blank=True)),
                ('gateway_response', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('payment', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='refunds', to='commerce.payment')),
            ],
            options={
                'db_table': 'commerce_refund',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='WebhookEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('gateway', models.CharField(choices=GATEWAY_CHOICES, max_length=20)),
                ('event_id', models.CharField(max_length=255)),
                ('event_type', models.CharField(blank=True, max_length=255)),
                ('payload', models.TextField(blank=True, help_text='Raw request body as received.')),
                ('headers', models.JSONField(blank=True, default=dict)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processed', 'Processed'), ('failed', 'Failed'), ('skipped', 'Skipped')], default='pending', max_length=20)),
                ('attempts', models.PositiveIntegerField(default=1)),
                ('last_error', models.TextField(blank=True)),
                ('http_status_code', models.PositiveSmallIntegerField(blank=True, null=True)),
                ('received_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('order', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='webhook_events', to='commerce.order')),
                ('subscription', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='webhook_events', to='commerce.subscription')),
            ],
            options={
                'db_table': 'commerce_webhook_event',
                'ordering': ['-received_at'],
                'indexes': [
                    models.Index(fields=['status', 'received_at'], name='webhook_status_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('gateway', 'event_id'), name='unique_webhook_gateway_event'),
                ],
            },
        ),
        migrations.CreateModel(
            name='CouponUsage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('discount_amount', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('coupon', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='usages', to='commerce.coupon')),
                ('order', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='coupon_usages', to='commerce.order')),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='coupon_usages', to='workspace.workspace')),
            ],
            options={
                'db_table': 'commerce_coupon_usage',
                'ordering': ['-created_at'],
                'constraints': [
                    models.UniqueConstraint(fields=('coupon', 'order'), name='unique_coupon_usage_per_order'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PermissionMatrix',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('key', models.CharField(max_length=150)),
                ('scope', models.CharField(blank=True, max_length=150, null=True)),
                ('allowed', models.BooleanField(default=False)),
                ('locked', models.BooleanField(default=False, help_text='Descendants cannot override a locked decision.')),
                ('source', models.CharField(choices=[('inherited', 'Inherited'), ('explicit', 'Explicit'), ('trained', 'Trained')], default='explicit', max_length=20)),
                ('trained_at', models.DateTimeField(blank=True, null=True)),
                ('trained_route', models.CharField(blank=True, max_length=255)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('entity', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='permissions', to='commerce.entity')),
                ('set_by_entity', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='commerce.entity')),
            ],
            options={
                'db_table': 'commerce_permission_matrix',
                'ordering': ['entity_id', 'key'],
                'indexes': [
                    models.Index(fields=['key', 'entity'], name='permission_key_entity_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('entity', 'key', 'scope'), name='unique_permission_entity_key_scope'),
                    models.UniqueConstraint(condition=models.Q(('scope__isnull', True)), fields=('entity', 'key'), name='unique_permission_entity_key_unscoped'),
                ],
            },
        ),
        migrations.CreateModel(
            name='PermissionRequest',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('method', models.CharField(max_length=10)),
                ('route', models.CharField(max_length=500)),
                ('action', models.CharField(max_length=150)),
                ('scope', models.CharField(blank=True, max_length=150, null=True)),
                ('request_data', models.JSONField(blank=True, default=dict)),
                ('user_agent', models.TextField(blank=True)),
                ('ip_address', models.GenericIPAddressField(blank=True, null=True)),
                ('status', models.CharField(choices=[('allowed', 'Allowed'), ('denied', 'Denied'), ('pending', 'Pending')], default='pending', max_length=10)),
                ('was_trained', models.BooleanField(default=False)),
                ('trained_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('entity', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='permission_requests', to='commerce.entity')),
                ('user', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'commerce_permission_request',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['entity', 'action', 'was_trained'], name='permission_request_lookup_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='BundleHash',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('hash', models.CharField(max_length=64)),
                ('base_skus', models.JSONField(default=list)),
                ('name', models.CharField(blank=True, max_length=200)),
                ('coupon_code', models.CharField(blank=True, max_length=50)),
                ('fixed_price', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('discount_percent', models.DecimalField(blank=True, decimal_places=2, max_digits=5, null=True)),
                ('discount_amount', models.DecimalField(blank=True, decimal_places=2, max_digits=12, null=True)),
                ('min_quantity', models.PositiveIntegerField(default=1)),
                ('valid_from', models.DateTimeField(blank=True, null=True)),
                ('valid_until', models.DateTimeField(blank=True, null=True)),
                ('active', models.BooleanField(default=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('entity', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='bundle_hashes', to='commerce.entity')),
            ],
            options={
                'db_table': 'commerce_bundle_hash',
                'constraints': [
                    models.UniqueConstraint(fields=('hash', 'entity'), name='unique_bundle_hash_per_entity'),
                ],
            },
        ),
        migrations.CreateModel(
            name='Referral',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('code', models.CharField(max_length=50)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('converted', 'Converted'), ('qualified', 'Qualified'), ('disqualified', 'Disqualified')], default='pending', max_length=20)),
                ('commission_rate', models.DecimalField(blank=True, decimal_places=2, help_text='Percentage override; defaults to the standard rate when blank.', max_digits=5, null=True)),
                ('signed_up_at', models.DateTimeField(blank=True, null=True)),
                ('first_purchase_at', models.DateTimeField(blank=True, null=True)),
                ('qualified_at', models.DateTimeField(blank=True, null=True)),
                ('matured_at', models.DateTimeField(blank=True, null=True)),
                ('disqualified_at', models.DateTimeField(blank=True, null=True)),
                ('disqualification_reason', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('referee', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='referrals_received', to=settings.AUTH_USER_MODEL)),
                ('referrer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='referrals_made', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'commerce_referral',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ReferralPayout',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('payout_number', models.CharField(max_length=50, unique=True)),
                ('method', models.CharField(choices=[('btc', 'Bitcoin'), ('account_credit', 'Account credit')], max_length=20)),
                ('btc_address', models.CharField(blank=True, max_length=100)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('status', models.CharField(choices=[('requested', 'Requested'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed'), ('cancelled', 'Cancelled')], default='requested', max_length=20)),
                ('requested_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('failure_reason', models.CharField(blank=True, max_length=255)),
                ('user', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='referral_payouts', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'commerce_referral_payout',
                'ordering': ['-requested_at'],
            },
        ),
        migrations.CreateModel(
            name='ReferralCommission',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('order_amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('commission_rate', models.DecimalField(decimal_places=2, max_digits=5)),
                ('commission_amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('matured', 'Matured'), ('paid', 'Paid'), ('cancelled', 'Cancelled')], default='pending', max_length=20)),
                ('matures_at', models.DateTimeField()),
                ('matured_at', models.DateTimeField(blank=True, null=True)),
                ('paid_at', models.DateTimeField(blank=True, null=True)),
                ('notes', models.TextField(blank=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('invoice', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to='commerce.invoice')),
                ('order', models.OneToOneField(on_delete=django.db.models.deletion.CASCADE, related_name='referral_commission', to='commerce.order')),
                ('payout', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='commissions', to='commerce.referralpayout')),
                ('referral', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='commissions', to='commerce.referral')),
                ('referrer', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='referral_commissions', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'commerce_referral_commission',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'matures_at'], name='commission_maturity_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='SubscriptionUsage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('quantity', models.PositiveIntegerField()),
                ('period_start', models.DateTimeField()),
                ('period_end', models.DateTimeField()),
                ('idempotency_key', models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ('stripe_usage_record_id', models.CharField(blank=True, max_length=255)),
                ('synced_at', models.DateTimeField(blank=True, null=True)),
                ('billed', models.BooleanField(default=False)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('meter', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='usage_records', to='commerce.usagemeter')),
                ('subscription', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='usage_records', to='commerce.subscription')),
            ],
            options={
                'db_table': 'commerce_subscription_usage',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['subscription', 'synced_at'], name='usage_sync_idx'),
                ],
            },
        ),
    ]
