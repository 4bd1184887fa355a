from decimal import Decimal

import commerce.models
from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    dependencies = [
        ('commerce', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.AddField(
            model_name='invoice',
            name='credit_applied',
            field=models.DecimalField(decimal_places=2, default=Decimal('0.00'), help_text="Settled from the workspace's credit notes.", max_digits=12),
        ),
        migrations.CreateModel(
            name='CreditNote',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('reference_number', models.CharField(max_length=32, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('amount_used', models.DecimalField(decimal_places=2, default=Decimal('0.00'), max_digits=12)),
                ('currency', models.CharField(default=commerce.models._default_currency, max_length=3)),
                ('reason', models.CharField(choices=[('plan_downgrade', 'Plan downgrade'), ('partial_refund', 'Partial refund'), ('goodwill', 'Goodwill')], max_length=30)),
                ('description', models.TextField(blank=True)),
                ('status', models.CharField(choices=[('draft', 'Draft'), ('issued', 'Issued'), ('partially_applied', 'Partially applied'), ('applied', 'Applied'), ('void', 'Void')], default='draft', max_length=20)),
                ('issued_at', models.DateTimeField(blank=True, null=True)),
                ('applied_at', models.DateTimeField(blank=True, null=True)),
                ('voided_at', models.DateTimeField(blank=True, null=True)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('applied_to_invoice', models.ForeignKey(blank=True, help_text='Last invoice this credit was applied to.', null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='credit_notes', to='commerce.invoice')),
                ('issued_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('refund', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='credit_notes', to='commerce.refund')),
                ('subscription', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='credit_notes', to='commerce.subscription')),
                ('workspace', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='credit_notes', to='workspace.workspace')),
            ],
            options={
                'db_table': 'commerce_credit_note',
                'ordering': ['created_at', 'pk'],
                'indexes': [
                    models.Index(fields=['workspace', 'status'], name='credit_note_ws_status_idx'),
                ],
                'constraints': [
                    models.CheckConstraint(condition=models.Q(('amount__gt', 0)), name='credit_note_amount_positive'),
                    models.CheckConstraint(condition=models.Q(('amount_used__lte', models.F('amount'))), name='credit_note_not_overdrawn'),
                ],
            },
        ),
    ]
