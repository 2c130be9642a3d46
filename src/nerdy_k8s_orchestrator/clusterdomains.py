from __future__ import annotations

import logging

from .controller import Request, Result
from .driver import ClusterDomainCapability, Driver, DriverError
from .events import EventRecorder
from .k8s import ObjectNotFoundError, ObjectStore, StoreError
from .log import object_logger
from .models import ClusterDomainsStatus, ClusterDomainUpdate, ClusterDomainUpdateStatusType

logger = logging.getLogger(__name__)


class ClusterDomainUpdateReconciler:
    """Applies a ClusterDomainUpdate exactly once.

    Updates that reached Successful or Failed are never processed again.
    """

    def __init__(self, *, store: ObjectStore, driver: Driver, events: EventRecorder) -> None:
        self.store = store
        self.driver = driver
        self.events = events

    def reconcile(self, request: Request) -> Result | None:
        try:
            update = self.store.get(ClusterDomainUpdate, request.name)
        except ObjectNotFoundError:
            return None
        if update.being_deleted or update.status != ClusterDomainUpdateStatusType.INITIAL:
            return None

        log = object_logger(logger, update)
        action = "activate" if update.active else "deactivate"
        try:
            domains = self.driver.require(ClusterDomainCapability)
            if update.active:
                domains.activate_cluster_domain(update)
            else:
                domains.deactivate_cluster_domain(update)
        except DriverError as error:
            message = f"unable to {action} cluster domain: {error}"
            log.error(message)
            update.status = ClusterDomainUpdateStatusType.FAILED
            update.reason = message
            self.events.warning(update, ClusterDomainUpdateStatusType.FAILED.value, message)
        else:
            update.status = ClusterDomainUpdateStatusType.SUCCESSFUL
            log.info("Cluster domain %s %sd", update.cluster_domain, action)

        self.store.update(update)
        if update.status == ClusterDomainUpdateStatusType.SUCCESSFUL:
            self._refresh_domain_statuses()
        return None

    def _refresh_domain_statuses(self) -> None:
        # An unchanged write makes the status controller query the driver again.
        # The update is already terminal here, so failures are only logged.
        try:
            statuses = self.store.list(ClusterDomainsStatus)
        except StoreError as error:
            logger.warning("Unable to list cluster domain statuses: %s", error)
            return
        for status in statuses:
            try:
                self.store.update(status)
            except StoreError as error:
                object_logger(logger, status).warning("Unable to refresh cluster domain status: %s", error)
