from __future__ import annotations

import os
from typing import Mapping, Optional

from chainaudit.core.config import settings

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


def _first_defined(*values: Optional[str]) -> str:
    for value in values:
        if value is not None and value.strip():
            return value.strip()
    return DEFAULT_REDIS_URL


def resolve_celery_broker_url(environ: Optional[Mapping[str, str]] = None) -> str:
    """Broker URL: CELERY_BROKER_URL, then REDIS_URL (env before settings)."""
    env = os.environ if environ is None else environ
    return _first_defined(
        env.get("CELERY_BROKER_URL"),
        settings.CELERY_BROKER_URL,
        env.get("REDIS_URL"),
        settings.REDIS_URL,
    )


def resolve_celery_result_backend(environ: Optional[Mapping[str, str]] = None) -> str:
    env = os.environ if environ is None else environ
    return _first_defined(
        env.get("CELERY_RESULT_BACKEND"),
        settings.CELERY_RESULT_BACKEND,
        resolve_celery_broker_url(env),
    )
