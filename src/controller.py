"""
Limb Controller - dispatches DeviceLink reconcile passes.

Similar to a Kubernetes controller manager: watch events and a periodic
resync feed link identities into a work queue, and a bounded pool of
workers runs reconcile passes. An identity is never reconciled by two
workers at once; an identity that changes while it is being reconciled is
reconciled again afterwards. Passes asking to be requeued come back after
an exponential backoff with jitter.
"""

import asyncio
import logging
import random
from typing import Dict, List, Optional, Set

from config import ControllerConfig
from connection import ConnectionManager
from devicelink import DeviceLinkReconciler, ReconcileResult
from events import EventBus, EventSubscription
from models import NamespacedName
from predicate import DeviceLinkChangedPredicate
from resolver import DeviceLinkResolver

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Identity-keyed work queue.

    Keys waiting in the queue are deduplicated. A key added while it is
    being processed is parked as dirty and queued again by :meth:`done`.
    """

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[NamespacedName] = set()
        self._processing: Set[NamespacedName] = set()
        self._dirty: Set[NamespacedName] = set()
        self._delayed: Dict[NamespacedName, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def add(self, key: NamespacedName) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: NamespacedName, delay: float) -> None:
        """Add a key once ``delay`` seconds have passed."""
        if self._shutting_down:
            return
        loop = asyncio.get_running_loop()
        existing = self._delayed.get(key)
        if existing is not None:
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()
        self._delayed[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: NamespacedName) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    async def get(self) -> Optional[NamespacedName]:
        """Wait for the next key; None once the queue shuts down."""
        key = await self._queue.get()
        if key is None:
            return None
        self._queued.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: NamespacedName) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def shutdown(self, waiters: int) -> None:
        self._shutting_down = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        for _ in range(waiters):
            self._queue.put_nowait(None)

    def is_processing(self, key: NamespacedName) -> bool:
        return key in self._processing

    def __len__(self) -> int:
        return len(self._queued)


class LimbController:
    """
    Runs the DeviceLink reconciler for one node.

    Subscribes to link watch events filtered by the node's predicate,
    resyncs every ``reconcile_interval`` seconds, and requeues failed
    passes with exponential backoff.
    """

    def __init__(
        self,
        db_manager,
        reconciler: DeviceLinkReconciler,
        connections: ConnectionManager,
        event_bus: EventBus,
        config: Optional[ControllerConfig] = None,
        resolver: Optional[DeviceLinkResolver] = None,
    ):
        self.db = db_manager
        self.reconciler = reconciler
        self.connections = connections
        self.config = config or ControllerConfig()
        self.node_name = self.config.node_name or reconciler.node_name
        self.resolver = resolver
        self.predicate = DeviceLinkChangedPredicate(self.node_name)
        self.queue = WorkQueue()
        self.running = False

        self._event_bus = event_bus
        self._subscriber_id: Optional[str] = None
        self._failures: Dict[NamespacedName, int] = {}
        self._tasks: List[asyncio.Task] = []
        self._resync_task: Optional[asyncio.Task] = None

        connections.register_adaptor_handler(reconciler.on_adaptor_status)
        connections.register_connection_handler(reconciler.on_connection_status)
        reconciler.set_enqueue(self.enqueue)

    async def start(self):
        """Start watching, resyncing and reconciling."""
        logger.info(f"Starting limb controller on node {self.node_name}")
        self.running = True

        self._subscriber_id, subscription = await self._event_bus.subscribe(
            self.predicate
        )

        self._resync_task = asyncio.create_task(self._resync_loop())
        self._tasks = [
            asyncio.create_task(self._watch_loop(subscription)),
            self._resync_task,
        ]
        self._tasks.extend(
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        )

        results = await asyncio.gather(*self._tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error(f"Controller error: {result}")

    async def stop(self):
        """Stop the controller gracefully, letting running passes finish."""
        logger.info("Stopping limb controller")
        self.running = False

        if self._subscriber_id is not None:
            await self._event_bus.unsubscribe(self._subscriber_id)
            self._subscriber_id = None
        self.queue.shutdown(self.config.max_concurrent_reconciles)

        if self._resync_task is not None and not self._resync_task.done():
            self._resync_task.cancel()

    async def enqueue(self, key: NamespacedName) -> None:
        """Ask for a reconcile pass of a link."""
        self.queue.add(key)

    async def _watch_loop(self, subscription: EventSubscription) -> None:
        async for event in subscription:
            self.queue.add(event.key)

    async def _resync_loop(self) -> None:
        while self.running:
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)
            await asyncio.sleep(self.config.reconcile_interval)

    async def resync(self) -> int:
        """
        Enqueue every link bound to or targeting this node, plus every link
        that still holds a local connection.

        A link moved to another node no longer shows up in the node listing,
        but its connection here must still be torn down by a reconcile.
        """
        links = await self.db.list_links(node_name=self.node_name)
        keys = [link.key for link in links]
        listed = set(keys)
        keys.extend(
            key for key in self.connections.connected_keys() if key not in listed
        )
        for key in keys:
            self.queue.add(key)
        if keys:
            logger.debug(f"Resync enqueued {len(keys)} DeviceLinks")
        return len(keys)

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                break
            try:
                await self.process(key)
            finally:
                self.queue.done(key)
        logger.debug(f"Worker {worker_id} stopped")

    async def process(self, key: NamespacedName) -> ReconcileResult:
        """Run the resolver (when enabled) and the reconciler for one link."""
        try:
            result = None
            if self.resolver is not None:
                result = await self.resolver.resolve(key)
            if result is None:
                result = await self.reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Error reconciling DeviceLink {key}: {e}", exc_info=True)
            result = ReconcileResult(requeue=True, message=str(e))

        if result.requeue:
            delay = self.backoff_delay(key)
            logger.info(f"Requeueing DeviceLink {key} in {delay:.1f}s: {result.message}")
            self.queue.add_after(key, delay)
        else:
            self._failures.pop(key, None)
        return result

    def backoff_delay(self, key: NamespacedName) -> float:
        """
        Next backoff delay of a key, counting this failure.

        ``base * 2^failures`` capped at ``backoff_max_delay``, with
        ±``backoff_jitter_factor`` jitter to prevent thundering herds.
        """
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1

        delay = min(
            self.config.backoff_base_delay * (2 ** min(failures, 10)),
            self.config.backoff_max_delay,
        )
        jitter = self.config.backoff_jitter_factor
        return max(0.0, delay * (1 + random.uniform(-jitter, jitter)))
