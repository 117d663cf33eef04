"""Shared fixtures: a simulated Ethernet segment behind a fake raw socket."""

import errno
import os
import queue
import threading
import time
from ipaddress import ip_interface

import pytest

from commands import ArpSpoofService
from link import LinkManager
from packets import InterfaceInfo
from protocols import ARP_REPLY, decode, encode_arp
from settings import EngineSettings

ATTACKER_MAC = '02:00:00:00:00:0a'
GATEWAY_MAC = '02:00:00:00:00:01'
TARGET_MAC = '02:00:00:00:00:50'


class FakeLan(object):
    """
    Answers ARP requests for the configured hosts.

    ``hosts`` maps an IP to one MAC or to a list of MACs; every MAC in the
    list answers, in order (duplicate replies).
    """

    def __init__(self, hosts=None):
        self.hosts = dict(hosts or {})
        self.sent = []
        self.sockets = []
        self.opened = 0
        self.send_errno = None
        self.failures_left = 0
        self._lock = threading.Lock()

    def socket(self, name):
        with self._lock:
            self.opened += 1
            sock = FakeSocket(self, name)
            self.sockets.append(sock)
            return sock

    def fail_sends(self, count, err=errno.ENOBUFS):
        with self._lock:
            self.failures_left = count
            self.send_errno = err

    def fail_forever(self, err):
        self.fail_sends(float('inf'), err)

    def sent_frames(self):
        with self._lock:
            return [decode(frame) for frame in self.sent]

    def _transmit(self, sock, frame):
        with self._lock:
            if self.failures_left > 0:
                self.failures_left -= 1
                raise OSError(self.send_errno, os.strerror(self.send_errno))
            self.sent.append(bytes(frame))
            hosts = dict(self.hosts)
        request = decode(frame)
        if request is None or not request.is_request:
            return
        macs = hosts.get(request.target_ip)
        if macs is None:
            return
        if isinstance(macs, str):
            macs = [macs]
        for mac in macs:
            sock.inject(encode_arp(ARP_REPLY, mac, request.target_ip, request.sender_mac,
                                   request.sender_ip, eth_src=mac, eth_dst=request.sender_mac))


class FakeSocket(object):
    """The subset of scapy's SuperSocket the link layer uses."""

    def __init__(self, lan, name):
        self.lan = lan
        self.name = name
        self.closed = False
        self._inbox = queue.Queue()
        self._pending = None

    def inject(self, frame):
        self._inbox.put(frame)

    def send(self, frame):
        if self.closed:
            raise OSError(errno.EBADF, 'Bad file descriptor')
        self.lan._transmit(self, frame)
        return len(frame)

    def select(self, sockets, remain=None):
        if self._pending is None:
            try:
                self._pending = self._inbox.get(timeout=remain)
            except queue.Empty:
                return []
        return [self]

    def recv_raw(self, x=None):
        frame, self._pending = self._pending, None
        return None, frame, time.time()

    def close(self):
        self.closed = True


def wait_for(predicate, timeout=3.0, step=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return predicate()


@pytest.fixture
def lan():
    return FakeLan({'192.168.1.1': GATEWAY_MAC, '192.168.1.50': TARGET_MAC})


@pytest.fixture
def interface():
    return InterfaceInfo(name='eth-test', description='eth-test - 192.168.1.10',
                         mac=ATTACKER_MAC, addresses=(ip_interface('192.168.1.10/24'),))


@pytest.fixture
def settings():
    return EngineSettings(sweep_window=0.3, burst_pause=0.0, hostname_timeout=0.0,
                          resolve_attempts=3, resolve_timeout=0.1, spoof_interval=0.05,
                          max_consecutive_failures=5, restore_count=2, poll_timeout=0.02,
                          log_file='')


@pytest.fixture
def link_manager(lan):
    manager = LinkManager(socket_factory=lan.socket, poll_timeout=0.02)
    yield manager
    manager.close_all()


@pytest.fixture
def service(lan, interface, settings, link_manager):
    svc = ArpSpoofService(settings, link_manager=link_manager,
                          interface_provider=lambda: [interface],
                          hostname_lookup=lambda ip: '',
                          vendor_lookup=lambda mac: 'Unknown')
    yield svc
    svc.close()
