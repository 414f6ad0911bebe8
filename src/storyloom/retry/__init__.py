"""Retry backups and restore of story state after a stopped or retried turn."""

from storyloom.retry.backup import RetryBackupData, build_retry_backup, entry_count_before_action
from storyloom.retry.service import (
    RestoreResult,
    RetryCleanup,
    RetryService,
    RetryStoreCallbacks,
    SavedEntityIds,
    StopCleanup,
)
from storyloom.retry.store_callbacks import (
    ActivationTracker,
    RetryInProgressError,
    RetryLock,
    StoreRetryCallbacks,
    load_retry_backup,
    save_retry_backup,
)

__all__ = [
    "ActivationTracker",
    "RestoreResult",
    "RetryBackupData",
    "RetryCleanup",
    "RetryInProgressError",
    "RetryLock",
    "RetryService",
    "RetryStoreCallbacks",
    "SavedEntityIds",
    "StopCleanup",
    "StoreRetryCallbacks",
    "build_retry_backup",
    "entry_count_before_action",
    "load_retry_backup",
    "save_retry_backup",
]
