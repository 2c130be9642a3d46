from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Callable, Iterable, Iterator

from kubernetes import client, watch
from kubernetes.client import ApiException

from .k8s import ObjectStore, StoreError
from .models import Record

logger = logging.getLogger(__name__)

DEFAULT_BASE_BACKOFF_SECONDS = 1.0
WATCH_RETRY_SECONDS = 5.0


@dataclass(frozen=True)
class Request:
    name: str
    namespace: str | None = None

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class Result:
    requeue_after: float | None = None


Handler = Callable[[Request], "Result | None"]


class WorkQueue:
    """Deduplicating delay queue with per-request exponential backoff.

    A request that is already queued keeps its earliest due time, so a burst
    of notifications for one object results in a single reconcile.
    """

    def __init__(
        self,
        *,
        base_delay: float = DEFAULT_BASE_BACKOFF_SECONDS,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock
        self._due: dict[Request, float] = {}
        self._failures: dict[Request, int] = {}
        self._condition = threading.Condition()
        self._shutdown = False

    def __len__(self) -> int:
        with self._condition:
            return len(self._due)

    def add(self, request: Request, delay: float = 0.0) -> None:
        with self._condition:
            if self._shutdown:
                return
            due = self._clock() + max(delay, 0.0)
            current = self._due.get(request)
            if current is None or due < current:
                self._due[request] = due
            self._condition.notify()

    def get(self, timeout: float | None = None) -> Request | None:
        """Pop the earliest due request, waiting up to ``timeout`` seconds."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._condition:
            while not self._shutdown:
                now = self._clock()
                if self._due:
                    request, due = min(self._due.items(), key=lambda item: item[1])
                    if due <= now:
                        del self._due[request]
                        return request
                    wait = due - now
                else:
                    wait = None
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._condition.wait(wait)
            return None

    def backoff(self, request: Request) -> float:
        with self._condition:
            failures = self._failures.get(request, 0)
            self._failures[request] = failures + 1
        delay = min(self._base_delay * (2**failures), self._max_delay)
        self.add(request, delay)
        return delay

    def forget(self, request: Request) -> None:
        with self._condition:
            self._failures.pop(request, None)

    def failures(self, request: Request) -> int:
        with self._condition:
            return self._failures.get(request, 0)

    def shutdown(self) -> None:
        with self._condition:
            self._shutdown = True
            self._due.clear()
            self._condition.notify_all()


class RecordSource:
    """Lists and watches one custom resource kind."""

    def __init__(self, store: ObjectStore, record_type: type[Record], namespace: str | None = None) -> None:
        self.store = store
        self.record_type = record_type
        self.namespace = namespace

    @property
    def name(self) -> str:
        return self.record_type.KIND.plural

    def list_requests(self) -> Iterable[Request]:
        return [
            Request(name=record.metadata.name, namespace=record.metadata.namespace)
            for record in self.store.list(self.record_type, self.namespace)
        ]

    def watch_requests(self, timeout_seconds: int) -> Iterator[Request]:
        for event_type, body in self.store.watch(self.record_type, self.namespace, timeout_seconds=timeout_seconds):
            if event_type == "ERROR":
                # Usually an expired resource version; the next resync relists.
                logger.debug("Watch for %s returned an error: %s", self.name, body)
                return
            metadata = body.get("metadata") or {}
            yield Request(name=metadata.get("name", ""), namespace=metadata.get("namespace"))


class JobSource:
    """Lists and watches Jobs matching a label selector."""

    name = "jobs"

    def __init__(self, batch_api: client.BatchV1Api, *, label_selector: str, namespace: str | None = None) -> None:
        self.batch_api = batch_api
        self.label_selector = label_selector
        self.namespace = namespace

    def _list_func(self) -> tuple[Callable[..., Any], dict[str, Any]]:
        if self.namespace:
            return self.batch_api.list_namespaced_job, {"namespace": self.namespace}
        return self.batch_api.list_job_for_all_namespaces, {}

    def list_requests(self) -> Iterable[Request]:
        func, kwargs = self._list_func()
        jobs = func(label_selector=self.label_selector, **kwargs).items
        return [Request(name=job.metadata.name, namespace=job.metadata.namespace) for job in jobs]

    def watch_requests(self, timeout_seconds: int) -> Iterator[Request]:
        func, kwargs = self._list_func()
        stream = watch.Watch()
        try:
            for event in stream.stream(
                func,
                label_selector=self.label_selector,
                timeout_seconds=timeout_seconds,
                **kwargs,
            ):
                job = event["object"]
                yield Request(name=job.metadata.name, namespace=job.metadata.namespace)
        finally:
            stream.stop()


class WatchLoop:
    """Feeds one handler from one source.

    A feeder thread relists the source every resync period and watches it in
    between; a single worker thread drains the queue, so objects of this kind
    are reconciled one at a time.
    """

    def __init__(
        self,
        source: Any,
        handler: Handler,
        *,
        resync_seconds: int = 30,
        max_backoff_seconds: float = 300.0,
        queue: WorkQueue | None = None,
    ) -> None:
        self.source = source
        self.handler = handler
        self.resync_seconds = resync_seconds
        self.queue = queue if queue is not None else WorkQueue(max_delay=max_backoff_seconds)
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def name(self) -> str:
        return self.source.name

    def start(self) -> None:
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._feed, name=f"{self.name}-feeder", daemon=True),
            threading.Thread(target=self._work, name=f"{self.name}-worker", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Started controller for %s", self.name)

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop_event.set()
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        logger.info("Stopped controller for %s", self.name)

    def resync(self) -> int:
        requests = list(self.source.list_requests())
        for request in requests:
            self.queue.add(request)
        return len(requests)

    def process_next(self, timeout: float | None = 0.5) -> bool:
        """Reconcile one queued request. Returns False when nothing was due."""
        request = self.queue.get(timeout=timeout)
        if request is None:
            return False
        try:
            result = self.handler(request)
        except Exception as error:  # pylint: disable=broad-except
            delay = self.queue.backoff(request)
            logger.error("Error reconciling %s %s, retrying in %.0fs: %s", self.name, request, delay, error)
            return True
        self.queue.forget(request)
        if result is not None and result.requeue_after is not None:
            self.queue.add(request, result.requeue_after)
        return True

    def _feed(self) -> None:
        while not self._stop_event.is_set():
            try:
                count = self.resync()
                logger.debug("Resynced %d %s", count, self.name)
                for request in self.source.watch_requests(self.resync_seconds):
                    if self._stop_event.is_set():
                        return
                    self.queue.add(request)
            except (StoreError, ApiException) as error:
                logger.warning("Watch for %s interrupted: %s", self.name, error)
                self._stop_event.wait(WATCH_RETRY_SECONDS)
            except Exception:  # pylint: disable=broad-except
                # Dropped connections surface as urllib3 or socket errors.
                logger.exception("Watch for %s failed, restarting", self.name)
                self._stop_event.wait(WATCH_RETRY_SECONDS)

    def _work(self) -> None:
        while not self._stop_event.is_set():
            self.process_next(timeout=0.5)


class ControllerManager:
    def __init__(self, loops: Iterable[WatchLoop] = ()) -> None:
        self.loops: list[WatchLoop] = list(loops)

    def add(self, loop: WatchLoop) -> None:
        self.loops.append(loop)

    def start(self) -> None:
        for loop in self.loops:
            loop.start()

    def stop(self) -> None:
        for loop in self.loops:
            loop.stop()

    def run(self, stop_event: threading.Event) -> None:
        self.start()
        try:
            stop_event.wait()
        finally:
            self.stop()
