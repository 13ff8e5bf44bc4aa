import os
from celery import Celery
from celery.schedules import crontab

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'taskorilla_project.settings')

app = Celery('taskorilla_project')
app.config_from_object('django.conf:settings', namespace='CELERY')
app.autodiscover_tasks()

# Beat schedule - runs same logic as the reconcile_payouts management command
app.conf.beat_schedule = {
    'reconcile-open-payouts': {
        'task': 'core.tasks.reconcile_open_payouts_task',
        'schedule': crontab(minute='*/15'),  # Every 15 minutes
    },
}

app.conf.timezone = 'UTC'
