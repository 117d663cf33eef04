"""
Reply dispatcher.

A single background thread per interface reads every frame from the link and
hands decoded ARP replies to whoever is waiting for that sender IP: the
scanner's collector during a sweep, and any pending MAC resolution.
"""

import logging
import queue
import threading
import time
from typing import Dict, Iterable, List, Optional

from errors import ArpSpoofError
from link import LinkHandle
from protocols import ParsedFrame, decode

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64
WAIT_SLICE = 0.05


class Waiter(object):
    """One-shot delivery slot for the first reply from ``ip``."""

    one_shot = True

    def __init__(self, ip: str):
        self.ip = ip
        self._slot = queue.Queue(maxsize=1)

    def deliver(self, frame: ParsedFrame):
        try:
            self._slot.put_nowait(frame)
        except queue.Full:
            pass

    def wait(self, timeout: float, cancel_event: threading.Event = None) -> Optional[ParsedFrame]:
        """Block up to ``timeout`` seconds; None on timeout or cancellation."""
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            if cancel_event is not None and cancel_event.is_set():
                return None
            try:
                return self._slot.get(timeout=min(remaining, WAIT_SLICE)
                                      if cancel_event is not None else remaining)
            except queue.Empty:
                continue


class Collector(object):
    """Append-only sink registered for many IPs for the length of a sweep."""

    one_shot = False

    def __init__(self, ips: Iterable[str]):
        self.ips = tuple(dict.fromkeys(ips))
        self._lock = threading.Lock()
        self._replies: List[ParsedFrame] = []

    def deliver(self, frame: ParsedFrame):
        with self._lock:
            self._replies.append(frame)

    @property
    def replies(self) -> List[ParsedFrame]:
        with self._lock:
            return list(self._replies)


class ReplyDispatcher(object):

    def __init__(self, handle: LinkHandle):
        self.handle = handle
        self._subscriptions: Dict[str, list] = {}
        self._locks = [threading.Lock() for _ in range(LOCK_STRIPES)]
        self._stop_event = threading.Event()
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _lock_for(self, ip: str) -> threading.Lock:
        return self._locks[hash(ip) % LOCK_STRIPES]

    def subscribe(self, ip: str, subscriber):
        with self._lock_for(ip):
            self._subscriptions.setdefault(ip, []).append(subscriber)

    def discard(self, ip: str, subscriber) -> bool:
        """Remove ``subscriber`` for ``ip``. False if it was already gone."""
        with self._lock_for(ip):
            subscribers = self._subscriptions.get(ip)
            if not subscribers or subscriber not in subscribers:
                return False
            subscribers.remove(subscriber)
            if not subscribers:
                del self._subscriptions[ip]
            return True

    def expect(self, ip: str) -> Waiter:
        waiter = Waiter(ip)
        self.subscribe(ip, waiter)
        return waiter

    def collect(self, ips: Iterable[str]) -> Collector:
        collector = Collector(ips)
        for ip in collector.ips:
            self.subscribe(ip, collector)
        return collector

    def discard_collector(self, collector: Collector):
        for ip in collector.ips:
            self.discard(ip, collector)

    def subscriber_count(self, ip: str = None) -> int:
        if ip is not None:
            with self._lock_for(ip):
                return len(self._subscriptions.get(ip, ()))
        return sum(len(subs) for subs in list(self._subscriptions.values()))

    def dispatch(self, data: bytes):
        """Route one raw frame. Runs on the receive thread."""
        frame = decode(data)
        if frame is None or not frame.is_reply:
            return
        if frame.sender_mac == self.handle.mac:
            return
        with self._lock_for(frame.sender_ip):
            subscribers = self._subscriptions.get(frame.sender_ip)
            if not subscribers:
                return
            for subscriber in list(subscribers):
                subscriber.deliver(frame)
                if subscriber.one_shot:
                    subscribers.remove(subscriber)
            if not subscribers:
                del self._subscriptions[frame.sender_ip]

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f'ARP-Dispatcher-{self.handle.name}',
                                        daemon=True)
        self._thread.start()

    def _run(self):
        logger.debug(f'Reply dispatcher started on {self.handle.name}')
        try:
            self.handle.receive_loop(self.dispatch, self._stop_event)
        except ArpSpoofError as exc:
            logger.error(f'Reply dispatcher on {self.handle.name} stopped: {exc}')
        logger.debug(f'Reply dispatcher stopped on {self.handle.name}')

    def stop(self, timeout: float = None):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout if timeout is not None else self.handle.poll_timeout * 5)
            self._thread = None
