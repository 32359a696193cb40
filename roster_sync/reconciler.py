"""
Reconciliation of the desired roster against the sink.

The plan is computed purely from two identity-keyed sets. Applying it runs
creates, then updates, then deletes, one item at a time; a failing item is
recorded and the remaining items still run.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from roster_sync.models import (
    ExistingRecord,
    ProfileRecord,
    SyncPlan,
    SyncResult,
    normalize_identity,
)
from roster_sync.retry import MaxRetriesExceeded, retry_call, create_retry_callback

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Computes and applies create/update/delete plans through a sink adapter.

    Args:
        sink: Sink adapter exposing list_existing/create/update/delete
        error_config: `error_handling` configuration (max_retries, retry_wait_seconds)
    """

    def __init__(self, sink, error_config: Optional[Dict[str, Any]] = None):
        self.sink = sink
        error_config = error_config or {}
        self.max_retries = error_config.get('max_retries', 3)
        self.retry_wait = error_config.get('retry_wait_seconds', 5)
        self.retry_backoff = error_config.get('retry_backoff', 1.0)

    def reconcile(self, desired: Iterable[ProfileRecord],
                  existing: Iterable[Any]) -> SyncPlan:
        """
        Compute the plan that turns `existing` into `desired`.

        Every identity present on both sides is updated; no field diff is made.
        """
        desired_map: Dict[str, ProfileRecord] = {}
        for record in desired:
            key = normalize_identity(record.identity)
            if key in desired_map:
                logger.warning(f"Duplicate desired identity {key}; keeping the first record")
                continue
            desired_map[key] = record

        existing_keys: List[str] = []
        seen_existing = set()
        for item in existing:
            key = self._existing_key(item)
            if not key:
                logger.warning(f"Existing sink record without identity ignored: {item}")
                continue
            if key in seen_existing:
                logger.warning(f"Sink holds more than one record for {key}")
                continue
            seen_existing.add(key)
            existing_keys.append(key)

        plan = SyncPlan(
            to_create=[record for key, record in desired_map.items() if key not in seen_existing],
            to_update=[(key, desired_map[key]) for key in existing_keys if key in desired_map],
            to_delete=[key for key in existing_keys if key not in desired_map],
        )

        logger.info(f"Plan: {len(plan.to_create)} to create, {len(plan.to_update)} to update, "
                    f"{len(plan.to_delete)} to delete")
        return plan

    def apply(self, plan: SyncPlan) -> SyncResult:
        """Execute a plan against the sink and report what succeeded."""
        result = SyncResult()

        for record in plan.to_create:
            if self._run('create', record.identity, self.sink.create, record, result=result):
                result.created += 1

        for identity, record in plan.to_update:
            if self._run('update', identity, self.sink.update, identity, record, result=result):
                result.updated += 1

        for identity in plan.to_delete:
            if self._run('delete', identity, self.sink.delete, identity, result=result):
                result.deleted += 1

        logger.info(f"Applied plan: {result.created} created, {result.updated} updated, "
                    f"{result.deleted} deleted, {len(result.errors)} errors")
        return result

    def sync(self, desired: Iterable[ProfileRecord]) -> SyncResult:
        """List the sink, reconcile and apply. Listing failures propagate."""
        existing = self.sink.list_existing()
        logger.info(f"Sink holds {len(existing)} records")
        return self.apply(self.reconcile(desired, existing))

    def _run(self, operation: str, identity: str, func, *args, result: SyncResult) -> bool:
        try:
            retry_call(
                func, args,
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                backoff=self.retry_backoff,
                exceptions=(Exception,),
                on_retry=create_retry_callback(f"Sink {operation} for {identity}"),
            )
        except MaxRetriesExceeded as e:
            message = str(e.last_exception)
            logger.error(f"Failed to {operation} {identity}: {message}")
            result.record_error(identity, operation, message)
            return False

        logger.info(f"{operation.capitalize()}d {identity}")
        return True

    @staticmethod
    def _existing_key(item: Any) -> str:
        if isinstance(item, ExistingRecord):
            return item.identity
        if isinstance(item, dict):
            return normalize_identity(item.get('identity') or item.get('email'))
        return normalize_identity(getattr(item, 'identity', None))
