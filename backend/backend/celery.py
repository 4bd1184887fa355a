import os

from celery import Celery
from celery.schedules import crontab

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.settings')

app = Celery('backend')

# Read CELERY_* keys from Django settings
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()

BILLING_QUEUE = 'billing'

# task name -> (beat entry, schedule, extra options)
BILLING_SCHEDULE = {
    'commerce.tasks.run_dunning': ('commerce_dunning_hourly', crontab(minute=5), {'priority': 2}),
    'commerce.tasks.process_expired_subscriptions': ('commerce_expire_subscriptions_hourly', crontab(minute=20), {}),
    'commerce.tasks.apply_scheduled_plan_changes': (
        'commerce_scheduled_plan_changes_15min', crontab(minute='*/15'), {'priority': 8},
    ),
    'commerce.tasks.refresh_exchange_rates': ('commerce_exchange_rates_hourly', crontab(minute=0), {}),
    'commerce.tasks.cleanup_expired_orders': ('commerce_cleanup_orders_10min', crontab(minute='*/10'), {}),
    'commerce.tasks.mature_referral_commissions': (
        'commerce_mature_commissions_daily', crontab(hour=3, minute=30), {},
    ),
    'commerce.tasks.sync_usage_to_stripe': ('commerce_usage_sync_hourly', crontab(minute=45), {}),
    'commerce.tasks.cleanup_webhook_events': ('commerce_cleanup_webhook_events_daily', crontab(hour=4, minute=0), {}),
    'commerce.tasks.send_renewal_reminders': ('commerce_renewal_reminders_daily', crontab(hour=9, minute=0), {}),
}

app.conf.task_routes = {
    **{task: {'queue': BILLING_QUEUE} for task in BILLING_SCHEDULE},
    '*': {'queue': 'default'},
}
app.conf.task_default_queue = 'default'

app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    task_track_started=True,
    task_time_limit=30 * 60,
    task_soft_time_limit=25 * 60,
    # Billing jobs lock rows; one task per worker slot at a time
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_queues={
        'default': {'exchange': 'default', 'routing_key': 'default'},
        BILLING_QUEUE: {'exchange': BILLING_QUEUE, 'routing_key': BILLING_QUEUE},
    },
)

# A dunning sweep must not overlap with the next one
app.conf.task_annotations = {
    'commerce.tasks.run_dunning': {'rate_limit': '1/m', 'time_limit': 1800, 'soft_time_limit': 1500},
    'commerce.tasks.refresh_exchange_rates': {'rate_limit': '4/h', 'time_limit': 120},
}

app.conf.beat_schedule = {
    entry: {'task': task, 'schedule': schedule, 'options': {'queue': BILLING_QUEUE, **options}}
    for task, (entry, schedule, options) in BILLING_SCHEDULE.items()
}
