"""
Connectivity & Lifecycle Service
Tracks online/offline transitions and page lifecycle events, triggering a sync
when connectivity returns and flushing buffered telemetry when the page hides
or unloads.
"""

import asyncio
import logging
import threading
from collections import deque
from typing import Any, Callable, Dict, List, Optional

import requests

from petsync.services.scheduling import Clock, Scheduler, TaskHandle

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]

LIFECYCLE_HIDDEN = 'hidden'
LIFECYCLE_VISIBLE = 'visible'
LIFECYCLE_UNLOAD = 'unload'
LIFECYCLE_EVENTS = (LIFECYCLE_HIDDEN, LIFECYCLE_VISIBLE, LIFECYCLE_UNLOAD)


class ConnectivityMonitor:
    """Current online state plus listeners notified on transitions only."""

    def __init__(self, initially_online: bool = True):
        self._online = initially_online
        self._listeners: List[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: ConnectivityListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def set_online(self, online: bool) -> bool:
        """Record the current state. Returns True when it changed."""
        online = bool(online)
        if online == self._online:
            return False
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {str(e)}")
        return True


class ConnectivityProbe:
    """Periodically checks a URL and feeds the result into the monitor."""

    def __init__(self, monitor: ConnectivityMonitor, url: str, timeout: float = 3.0,
                 session: Optional[requests.Session] = None):
        self.monitor = monitor
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()
        self._handle: Optional[TaskHandle] = None

    def _probe(self) -> bool:
        try:
            response = self.session.head(self.url, timeout=self.timeout)
            return response.status_code < 500
        except requests.RequestException as e:
            logger.debug(f"Connectivity probe failed: {str(e)}")
            return False

    async def check(self) -> bool:
        online = await asyncio.to_thread(self._probe)
        self.monitor.set_online(online)
        return online

    def start(self, scheduler: Scheduler, interval: float) -> TaskHandle:
        self.stop()
        self._handle = scheduler.call_every(interval, self.check)
        return self._handle

    def stop(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class BeaconTransport:
    """Fire-and-forget POST on a daemon thread; failures are only logged."""

    def __init__(self, endpoint: Optional[str], timeout: float = 5.0,
                 session: Optional[requests.Session] = None):
        self.endpoint = endpoint
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, payload: Dict[str, Any]):
        try:
            self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning(f"Telemetry beacon failed: {str(e)}")

    def send(self, payload: Dict[str, Any]) -> bool:
        if not self.endpoint:
            return False
        threading.Thread(target=self._post, args=(payload,), daemon=True).start()
        return True


class TelemetryBuffer:
    """Bounded in-memory buffer of analytics events."""

    def __init__(self, transport: BeaconTransport, clock: Optional[Clock] = None, max_events: int = 100):
        self.transport = transport
        self.clock = clock or Clock()
        self._events = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._events)

    def track(self, name: str, properties: Optional[Dict[str, Any]] = None):
        with self._lock:
            self._events.append({
                'name': name,
                'properties': properties or {},
                'timestamp': self.clock.now_ms()
            })

    def flush(self, reason: str = 'manual') -> int:
        """Hand buffered events to the transport; returns how many were sent."""
        with self._lock:
            events = list(self._events)
            self._events.clear()
        if not events:
            return 0
        sent = self.transport.send({'reason': reason, 'events': events, 'sentAt': self.clock.now_ms()})
        if not sent:
            logger.debug(f"Dropped {len(events)} telemetry events, no transport configured")
            return 0
        return len(events)


class LifecycleHook:
    """Wires connectivity and page lifecycle signals to the sync engine and telemetry."""

    def __init__(self, monitor: ConnectivityMonitor, engine, scheduler: Scheduler,
                 telemetry: Optional[TelemetryBuffer] = None):
        self.monitor = monitor
        self.engine = engine
        self.scheduler = scheduler
        self.telemetry = telemetry
        self.visibility = LIFECYCLE_VISIBLE
        monitor.add_listener(self._on_connectivity_change)

    def _on_connectivity_change(self, online: bool):
        if online:
            logger.info("Back online, triggering sync")
            self.scheduler.spawn(self.engine.sync())

    def handle_event(self, event: str) -> int:
        """Apply a page lifecycle event. Returns the number of telemetry events flushed."""
        if event not in LIFECYCLE_EVENTS:
            raise ValueError(f"Unknown lifecycle event: {event}")
        self.visibility = event
        if event in (LIFECYCLE_HIDDEN, LIFECYCLE_UNLOAD) and self.telemetry is not None:
            return self.telemetry.flush(reason=event)
        return 0

    def detach(self):
        self.monitor.remove_listener(self._on_connectivity_change)
