from __future__ import annotations

import copy
from datetime import datetime
import logging
import time
from typing import Callable

from .controller import Request, Result
from .driver import ClusterDomainCapability, Driver, DriverError
from .events import EventRecorder
from .k8s import ConflictError, ObjectNotFoundError, ObjectStore, StoreError
from .log import object_logger
from .models import (
    SCHEDULE_POLICY_TYPES,
    ClusterDomains,
    Migration,
    MigrationSchedule,
    ObjectMeta,
    SchedulePolicyType,
    ScheduledMigrationStatus,
)
from .schedule import SchedulePolicyError, SchedulePolicyEvaluator
from .status import MigrationStatusType

logger = logging.getLogger(__name__)

CLEANUP_FINALIZER = "stork.libopenstorage.org/finalizer-cleanup"
NAME_TIME_SUFFIX_FORMAT = "%Y-%m-%d-%H%M%S"
DOMAINS_MAX_RETRIES = 5
DOMAINS_RETRY_INTERVAL_SECONDS = 5.0
SUSPENDED_REASON = "Suspended"


def migration_name(schedule_name: str, policy_type: SchedulePolicyType, now: datetime) -> str:
    return "-".join([schedule_name, policy_type.value.lower(), now.strftime(NAME_TIME_SUFFIX_FORMAT)])


def prune_index(entries: list[ScheduledMigrationStatus]) -> int:
    """Index of the latest Successful entry; everything before it may be removed."""
    if len(entries) <= 1:
        return 0
    for index in range(len(entries) - 1, -1, -1):
        if entries[index].status == MigrationStatusType.SUCCESSFUL:
            return index
    return 0


class MigrationScheduleReconciler:
    """Triggers Migrations from a MigrationSchedule and keeps their history bounded.

    Each reconcile runs, in order: deletion cascade, status refresh of
    outstanding migrations, the suspend check, the trigger decision and the
    prune of old migrations.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        driver: Driver,
        events: EventRecorder,
        evaluator: SchedulePolicyEvaluator,
        domain_retry_count: int = DOMAINS_MAX_RETRIES,
        domain_retry_interval_seconds: float = DOMAINS_RETRY_INTERVAL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.driver = driver
        self.events = events
        self.evaluator = evaluator
        self.domain_retry_count = domain_retry_count
        self.domain_retry_interval_seconds = domain_retry_interval_seconds
        self._sleep = sleep

    def reconcile(self, request: Request) -> Result | None:
        try:
            schedule = self.store.get(MigrationSchedule, request.name, request.namespace)
        except ObjectNotFoundError:
            return None
        log = object_logger(logger, schedule)

        if schedule.being_deleted:
            self.delete_migrations(schedule)
            self._release(schedule)
            return None

        if CLEANUP_FINALIZER not in schedule.metadata.finalizers:
            schedule.metadata.finalizers.append(CLEANUP_FINALIZER)
            schedule = self.store.update(schedule)

        try:
            schedule = self.update_migration_status(schedule)
        except StoreError as error:
            self._report(schedule, f"Error updating migration status: {error}")
            raise

        if not schedule.suspended:
            domains = self.cluster_domains()
            if domains is not None and domains.local_domain_inactive():
                schedule.suspend = True
                message = "Suspending migration schedule since local clusterdomain is inactive"
                self.events.warning(schedule, SUSPENDED_REASON, message)
                log.warning(message)
                self.store.update(schedule)
                return None

            try:
                policy_type = self.should_start_migration(schedule)
            except SchedulePolicyError as error:
                self._report(schedule, f"Error checking if migration should be triggered: {error}")
                return None

            if policy_type is not None:
                try:
                    schedule = self.start_migration(schedule, policy_type)
                except StoreError as error:
                    self._report(schedule, f"Error triggering migration for schedule({policy_type.value}): {error}")
                    raise

        try:
            self.prune_migrations(schedule)
        except StoreError as error:
            self._report(schedule, f"Error pruning old migrations: {error}")
            raise
        return None

    def update_migration_status(self, schedule: MigrationSchedule) -> MigrationSchedule:
        updated = False
        namespace = schedule.metadata.namespace
        for entries in schedule.items.values():
            for entry in entries:
                if entry.status.is_terminal:
                    continue
                try:
                    status = self.store.get(Migration, entry.name, namespace).status
                except StoreError as error:
                    self.events.warning(
                        schedule,
                        MigrationStatusType.FAILED.value,
                        f"Error getting status of migration {entry.name}: {error}",
                    )
                    status = MigrationStatusType.FAILED
                if status == MigrationStatusType.INITIAL:
                    status = MigrationStatusType.PENDING
                if status == entry.status:
                    continue

                entry.status = status
                updated = True
                if not status.is_terminal:
                    continue
                entry.finish_timestamp = self.evaluator.now()
                if status == MigrationStatusType.SUCCESSFUL:
                    self.events.normal(
                        schedule,
                        status.value,
                        f"Scheduled migration ({entry.name}) completed successfully",
                    )
                else:
                    self.events.warning(
                        schedule,
                        MigrationStatusType.FAILED.value,
                        f"Scheduled migration ({entry.name}) status {status.value}",
                    )
        if updated:
            return self.store.update(schedule)
        return schedule

    def cluster_domains(self) -> ClusterDomains | None:
        """Look up cluster domains with a bounded retry. None means proceed unchecked."""
        if not self.driver.supports(ClusterDomainCapability):
            return None
        domains = self.driver.require(ClusterDomainCapability)
        for attempt in range(1, self.domain_retry_count + 1):
            try:
                return domains.get_cluster_domains()
            except DriverError as error:
                logger.warning(
                    "Unable to get cluster domains (attempt %d/%d): %s",
                    attempt,
                    self.domain_retry_count,
                    error,
                )
                if attempt < self.domain_retry_count:
                    self._sleep(self.domain_retry_interval_seconds)
        return None

    def should_start_migration(self, schedule: MigrationSchedule) -> SchedulePolicyType | None:
        for policy_type in SCHEDULE_POLICY_TYPES:
            if any(not entry.status.is_terminal for entry in schedule.items.get(policy_type, [])):
                return None

        for policy_type in SCHEDULE_POLICY_TYPES:
            entries = schedule.items.get(policy_type, [])
            latest = max((entry.creation_timestamp for entry in entries), default=None)
            if self.evaluator.trigger_required(schedule.schedule_policy_name, policy_type, latest):
                return policy_type
        return None

    def start_migration(self, schedule: MigrationSchedule, policy_type: SchedulePolicyType) -> MigrationSchedule:
        now = self.evaluator.now()
        name = migration_name(schedule.metadata.name, policy_type, now)
        schedule.items.setdefault(policy_type, []).append(
            ScheduledMigrationStatus(name=name, creation_timestamp=now, status=MigrationStatusType.PENDING)
        )
        schedule = self.store.update(schedule)

        migration = Migration(
            metadata=ObjectMeta(
                name=name,
                namespace=schedule.metadata.namespace,
                owner_references=[schedule.owner_reference()],
            ),
            spec=copy.deepcopy(schedule.template.get("spec") or {}),
        )
        object_logger(logger, schedule).info("Starting migration %s", name)
        try:
            self.store.create(migration)
        except ConflictError:
            object_logger(logger, schedule).info("Migration %s already exists", name)
        return schedule

    def prune_migrations(self, schedule: MigrationSchedule) -> MigrationSchedule:
        updated = False
        namespace = schedule.metadata.namespace
        for policy_type, entries in schedule.items.items():
            delete_before = prune_index(entries)
            if delete_before == 0:
                continue
            for entry in entries[:delete_before]:
                try:
                    self.store.delete(Migration, entry.name, namespace)
                except StoreError as error:
                    object_logger(logger, schedule).warning("Error deleting %s: %s", entry.name, error)
            schedule.items[policy_type] = entries[delete_before:]
            updated = True
        if updated:
            return self.store.update(schedule)
        return schedule

    def delete_migrations(self, schedule: MigrationSchedule) -> None:
        last_error: StoreError | None = None
        for entries in schedule.items.values():
            for entry in entries:
                try:
                    self.store.delete(Migration, entry.name, schedule.metadata.namespace)
                except StoreError as error:
                    object_logger(logger, schedule).warning("Error deleting %s: %s", entry.name, error)
                    last_error = error
        if last_error is not None:
            raise last_error

    def _release(self, schedule: MigrationSchedule) -> None:
        if CLEANUP_FINALIZER not in schedule.metadata.finalizers:
            return
        schedule.metadata.finalizers.remove(CLEANUP_FINALIZER)
        try:
            self.store.update(schedule)
        except ObjectNotFoundError:
            pass

    def _report(self, schedule: MigrationSchedule, message: str) -> None:
        self.events.warning(schedule, MigrationStatusType.FAILED.value, message)
        object_logger(logger, schedule).error(message)
