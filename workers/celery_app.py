"""
Celery configuration for ChainAudit
Broker: Redis
Jobs: daily audit snapshots, incremental chain verification
"""

from celery import Celery
from celery.schedules import crontab

from chainaudit.core.celery_runtime import (
    resolve_celery_broker_url,
    resolve_celery_result_backend,
)

celery_app = Celery(
    'chainaudit',
    broker=resolve_celery_broker_url(),
    backend=resolve_celery_result_backend(),
    include=[
        'workers.tasks.audit_snapshot_task',
        'workers.tasks.audit_verify_task',
    ]
)

celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Routing
    task_routes={
        'workers.tasks.audit_snapshot_task.create_daily_snapshots': {'queue': 'audit'},
        'workers.tasks.audit_verify_task.verify_chain_incremental': {'queue': 'audit'},
    },

    # Retry policy
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_max_retries=3,
    task_default_retry_delay=60,

    # Beat schedule
    beat_schedule={
        'audit-daily-snapshots': {
            'task': 'workers.tasks.audit_snapshot_task.create_daily_snapshots',
            'schedule': crontab(hour=0, minute=5),  # 00:05 UTC, previous day
            'options': {'queue': 'audit'}
        },
        'audit-incremental-verify': {
            'task': 'workers.tasks.audit_verify_task.verify_chain_incremental',
            'schedule': crontab(minute=15),  # hourly
            'options': {'queue': 'audit'}
        },
    },

    worker_max_tasks_per_child=1000,
)

celery_app.conf.task_default_queue = 'default'
