"""Scheduling subsystem: post lifecycle, publish worker, sweeper, token refresh."""

from social_publisher.scheduling.lifecycle import PostLifecycle
from social_publisher.scheduling.periodic import PeriodicTask
from social_publisher.scheduling.publish_worker import PublishWorker
from social_publisher.scheduling.reconciliation import ReconciliationSweeper, SyncReport
from social_publisher.scheduling.token_refresh import (
    RefreshReport,
    RefreshResult,
    TokenRefreshScheduler,
)

__all__ = [
    "PostLifecycle",
    "PeriodicTask",
    "PublishWorker",
    "ReconciliationSweeper",
    "SyncReport",
    "TokenRefreshScheduler",
    "RefreshReport",
    "RefreshResult",
]
