"""
Monitoring package: notification hook and Prometheus metrics.
"""

from pairbot.monitoring.metrics import EngineMetrics, start_metrics_server
from pairbot.monitoring.notifier import (
    LogNotifier,
    NotificationEvent,
    NotificationHook,
    Notifier,
    PairEvent,
    WebhookNotifier,
)

__all__ = [
    "EngineMetrics",
    "LogNotifier",
    "NotificationEvent",
    "NotificationHook",
    "Notifier",
    "PairEvent",
    "WebhookNotifier",
    "start_metrics_server",
]
