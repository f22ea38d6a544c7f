"""Celery application for deferred billing work.

Usage (dev):
  export CELERY_BROKER_URL=redis://localhost:6379/0
  celery -A billing_project worker -l info
  celery -A billing_project beat -l info
"""

from __future__ import annotations

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "billing_project.settings.local")

app = Celery("billing")

# All CELERY_* Django settings (broker, acks_late, prefetch, beat schedule).
app.config_from_object("django.conf:settings", namespace="CELERY")

app.autodiscover_tasks()
