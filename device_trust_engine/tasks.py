from __future__ import annotations

import os
from typing import Any, Mapping, Optional

from celery import Celery

from .alerts import deliver_webhook, log_alert, resolve_webhook_url


def _broker_url() -> str:
    return os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")


def _result_backend() -> str:
    return os.getenv("CELERY_RESULT_BACKEND", _broker_url())


celery_app = Celery("device_trust_engine", broker=_broker_url(), backend=_result_backend())
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_ignore_result=True,
)


@celery_app.task(name="device_trust_engine.deliver_alert")
def deliver_alert(alert: Mapping[str, Any], webhook_url: Optional[str] = None) -> None:
    deliver_webhook(webhook_url or resolve_webhook_url(), alert)


class CeleryAlertSink:
    """Logs every alert and hands webhook delivery to a Celery worker."""

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url or resolve_webhook_url()

    def __call__(self, alert: Mapping[str, Any]) -> None:
        log_alert(alert)
        if self.webhook_url:
            deliver_alert.apply_async(args=[dict(alert), self.webhook_url])
