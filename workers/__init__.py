"""
ChainAudit Workers Package
Celery tasks for scheduled audit snapshots and chain verification
"""

from .celery_app import celery_app

__all__ = ['celery_app']
