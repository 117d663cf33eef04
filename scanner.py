"""
ARP sweep of the local subnet.
"""

import logging
import threading
import time
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from typing import Callable, Dict, List

from dispatcher import ReplyDispatcher
from errors import InterfaceError, NetworkError
from packets import Device, InterfaceInfo, UNKNOWN_VENDOR, lookup_vendor, resolve_hostname
from protocols import ARP_REQUEST, BROADCAST_MAC, ZERO_MAC, encode_arp
from settings import EngineSettings

logger = logging.getLogger(__name__)


def candidate_hosts(address: IPv4Interface, max_hosts: int) -> List[str]:
    """
    Usable host addresses of ``address``'s network, minus the address itself.

    Networks with more than ``max_hosts`` hosts are clamped to the /24 that
    contains ``address``.
    """
    network = address.network
    if network.num_addresses - 2 > max_hosts:
        clamped = IPv4Network(f'{address.ip}/24', strict=False)
        logger.warning(f'{network} is too large to sweep, scanning {clamped} instead')
        network = clamped
    if network.prefixlen >= 31:
        hosts = list(network)
    else:
        hosts = list(network.hosts())
    return [str(host) for host in hosts if host != address.ip]


class NetworkScanner(object):

    def __init__(self, dispatcher: ReplyDispatcher, settings: EngineSettings = None,
                 hostname_lookup: Callable[[str], str] = resolve_hostname,
                 vendor_lookup: Callable[[str], str] = lookup_vendor):
        self.dispatcher = dispatcher
        self.handle = dispatcher.handle
        self.settings = settings or EngineSettings()
        self.hostname_lookup = hostname_lookup
        self.vendor_lookup = vendor_lookup

    def scan(self, interface: InterfaceInfo, cancel_event: threading.Event = None) -> List[Device]:
        address = interface.primary
        if address is None:
            raise InterfaceError(f'No IPv4 address found on interface {interface.name}')
        cancel_event = cancel_event or threading.Event()
        candidates = candidate_hosts(address, self.settings.max_scan_hosts)
        logger.info(f'Scanning {len(candidates)} hosts on {address.network} via {interface.name}')

        collector = self.dispatcher.collect(candidates)
        try:
            self._broadcast_requests(str(address.ip), candidates, cancel_event)
            cancel_event.wait(self.settings.sweep_window)
        finally:
            self.dispatcher.discard_collector(collector)

        discovered: Dict[str, str] = {}
        for reply in collector.replies:
            discovered.setdefault(reply.sender_ip, reply.sender_mac)
        devices = self._enrich(discovered)
        logger.info(f'Scan complete. Found {len(devices)} devices')
        return devices

    def _broadcast_requests(self, source_ip: str, candidates: List[str],
                            cancel_event: threading.Event):
        sent = 0
        last_error = None
        for start in range(0, len(candidates), self.settings.burst_size):
            if cancel_event.is_set():
                break
            for ip in candidates[start:start + self.settings.burst_size]:
                frame = encode_arp(ARP_REQUEST, self.handle.mac, source_ip, ZERO_MAC, ip,
                                   eth_src=self.handle.mac, eth_dst=BROADCAST_MAC)
                try:
                    self.handle.send(frame)
                    sent += 1
                except NetworkError as exc:
                    last_error = exc
            if self.settings.burst_pause:
                cancel_event.wait(self.settings.burst_pause)
        if candidates and sent == 0 and last_error is not None:
            raise NetworkError(f'Failed to send ARP requests on {self.handle.name}',
                               str(last_error))
        logger.debug(f'Sent {sent}/{len(candidates)} ARP requests')

    def _lookup_hostnames(self, ips: List[str]) -> Dict[str, str]:
        hostnames = {ip: '' for ip in ips}
        if not ips or self.settings.hostname_timeout <= 0:
            return hostnames

        def _lookup(ip):
            try:
                hostnames[ip] = self.hostname_lookup(ip) or ''
            except Exception as exc:
                logger.debug(f'Hostname lookup failed for {ip}: {exc}')

        threads = [threading.Thread(target=_lookup, args=(ip,), name=f'HostnameLookup-{ip}',
                                    daemon=True) for ip in ips]
        for thread in threads:
            thread.start()
        deadline = time.monotonic() + self.settings.hostname_timeout
        for thread in threads:
            thread.join(max(0.0, deadline - time.monotonic()))
        # lookups still running are abandoned
        return dict(hostnames)

    def _enrich(self, discovered: Dict[str, str]) -> List[Device]:
        ips = sorted(discovered, key=IPv4Address)
        hostnames = self._lookup_hostnames(ips)

        devices = []
        for ip in ips:
            mac = discovered[ip]
            try:
                vendor = self.vendor_lookup(mac) or UNKNOWN_VENDOR
            except Exception as exc:
                logger.debug(f'Vendor lookup failed for {mac}: {exc}')
                vendor = UNKNOWN_VENDOR
            devices.append(Device(ip=ip, mac=mac, hostname=hostnames[ip], vendor=vendor))
        return devices
