"""
Link access layer.

One raw layer-2 socket per physical interface, shared by every consumer of
that interface. Sends are serialized per handle; receiving is done by exactly
one loop per handle (owned by the reply dispatcher).
"""

import errno
import logging
import threading
from typing import Callable, Dict

from scapy.all import conf
from scapy.data import MTU

from errors import InterfaceError, LinkClosedError, NetworkError, PrivilegeError, ResourceError
from packets import InterfaceInfo

logger = logging.getLogger(__name__)

PERMISSION_ERRNOS = (errno.EPERM, errno.EACCES)
MISSING_ERRNOS = (errno.ENODEV, errno.ENXIO, errno.ENETDOWN)


def _scapy_socket(iface: str):
    return conf.L2socket(iface=iface)


class LinkHandle(object):
    """Raw send/receive access to one interface."""

    def __init__(self, interface: InterfaceInfo, sock, poll_timeout: float = 0.2):
        self.interface = interface
        self.name = interface.name
        self.mac = interface.mac
        self.poll_timeout = poll_timeout
        self._sock = sock
        self._send_lock = threading.Lock()
        self._receiver_lock = threading.Lock()
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, frame: bytes):
        if self.closed:
            raise LinkClosedError(f'Interface {self.name} is closed')
        with self._send_lock:
            if self.closed:
                raise LinkClosedError(f'Interface {self.name} is closed')
            try:
                self._sock.send(frame)
            except OSError as exc:
                if exc.errno == errno.EBADF or self.closed:
                    raise LinkClosedError(f'Interface {self.name} is closed', str(exc))
                raise NetworkError(f'Failed to send frame on {self.name}', str(exc))

    def receive_loop(self, on_frame: Callable[[bytes], None], stop_event: threading.Event):
        """
        Invoke ``on_frame`` for every frame seen until ``stop_event`` is set
        or the handle is closed.
        """
        if not self._receiver_lock.acquire(blocking=False):
            raise ResourceError(f'A receive loop is already running on {self.name}')
        try:
            while not stop_event.is_set() and not self.closed:
                try:
                    ready = self._sock.select([self._sock], self.poll_timeout)
                    if not ready:
                        continue
                    _, data, _ = self._sock.recv_raw(MTU)
                except (OSError, ValueError) as exc:
                    if self.closed or stop_event.is_set():
                        break
                    logger.warning(f'Receive error on {self.name}: {exc}')
                    stop_event.wait(self.poll_timeout)
                    continue
                if data:
                    on_frame(bytes(data))
        finally:
            self._receiver_lock.release()

    def close(self):
        if self.closed:
            return
        self._closed.set()
        with self._send_lock:
            try:
                self._sock.close()
            except OSError as exc:
                logger.debug(f'Error closing socket on {self.name}: {exc}')
        logger.info(f'Closed link on {self.name}')


class LinkManager(object):
    """
    Reference counted table of open handles, keyed by interface name.

    ``socket_factory(name)`` must return an object with the scapy SuperSocket
    surface used here: ``send``, ``recv_raw``, ``select`` and ``close``.
    """

    def __init__(self, socket_factory: Callable = _scapy_socket, poll_timeout: float = 0.2):
        self._socket_factory = socket_factory
        self._poll_timeout = poll_timeout
        self._lock = threading.Lock()
        self._handles: Dict[str, LinkHandle] = {}
        self._refs: Dict[str, int] = {}

    def acquire(self, interface: InterfaceInfo) -> LinkHandle:
        with self._lock:
            handle = self._handles.get(interface.name)
            if handle is not None and not handle.closed:
                self._refs[interface.name] += 1
                return handle
            handle = LinkHandle(interface, self._open(interface.name), self._poll_timeout)
            self._handles[interface.name] = handle
            self._refs[interface.name] = 1
            logger.info(f'Opened link on {interface.name} ({interface.mac})')
            return handle

    def release(self, name: str):
        with self._lock:
            if name not in self._refs:
                return
            self._refs[name] -= 1
            if self._refs[name] > 0:
                return
            del self._refs[name]
            handle = self._handles.pop(name)
        handle.close()

    def refcount(self, name: str) -> int:
        with self._lock:
            return self._refs.get(name, 0)

    def close_all(self):
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
            self._refs.clear()
        for handle in handles:
            handle.close()

    def _open(self, name: str):
        try:
            return self._socket_factory(name)
        except PermissionError as exc:
            raise PrivilegeError(f'Raw access to {name} denied; run as root or grant CAP_NET_RAW',
                                 str(exc))
        except OSError as exc:
            if exc.errno in PERMISSION_ERRNOS:
                raise PrivilegeError(f'Raw access to {name} denied; run as root or grant CAP_NET_RAW',
                                     str(exc))
            if exc.errno in MISSING_ERRNOS:
                raise InterfaceError(f'Interface {name} is missing or down', str(exc))
            raise InterfaceError(f'Cannot open interface {name}', str(exc))
        except ValueError as exc:
            # scapy raises ValueError for unknown interface names
            raise InterfaceError(f'Interface {name} not found', str(exc))
