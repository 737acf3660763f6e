"""
Celery app initialization for the orchestrator project.

Workers run the wrap-up timers, the auto-pull requests and the periodic
auto-dial cycle. Start with:

    celery -A CELERY_INIT worker -l info
    celery -A CELERY_INIT beat -l info
"""

import os
from celery import Celery

# Set default Django settings
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'orchestrator.settings')

app = Celery('orchestrator')

# Load configuration from Django settings with CELERY namespace
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks from all registered Django apps
app.autodiscover_tasks()
