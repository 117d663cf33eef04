"""
Ethernet/ARP frame codec.

Pure byte-level encoding and decoding of ARP-over-IPv4-over-Ethernet frames.
No I/O and no state: addresses are passed around as the usual text forms
('aa:bb:cc:dd:ee:ff', '192.168.1.1') and packed here.
"""

import re
from dataclasses import dataclass
from socket import inet_aton, inet_ntoa
from struct import Struct, error as StructError
from typing import Optional

ETH_TYPE_ARP = 0x0806
ARP_HTYPE_ETHERNET = 1
ARP_PTYPE_IPV4 = 0x0800
ARP_HLEN = 6
ARP_PLEN = 4

ARP_REQUEST = 1
ARP_REPLY = 2

BROADCAST_MAC = 'ff:ff:ff:ff:ff:ff'
ZERO_MAC = '00:00:00:00:00:00'

ETHERNET_HEADER = Struct('!6s6sH')
ARP_HEADER = Struct('!HHBBH6s4s6s4s')
FRAME_LENGTH = ETHERNET_HEADER.size + ARP_HEADER.size  # 42

MAC_REGEX = re.compile(r'^[0-9a-fA-F]{2}([:-][0-9a-fA-F]{2}){5}$')


def is_valid_mac(mac: str) -> bool:
    return isinstance(mac, str) and MAC_REGEX.match(mac) is not None


def mac_to_bytes(mac: str) -> bytes:
    return bytes.fromhex(mac.replace(':', '').replace('-', ''))


def bytes_to_mac(addr: bytes) -> str:
    return ':'.join(format(octet, '02x') for octet in addr)


@dataclass(frozen=True)
class Ethernet:
    dst: str
    src: str
    eth: int = ETH_TYPE_ARP

    def pack(self) -> bytes:
        return ETHERNET_HEADER.pack(mac_to_bytes(self.dst), mac_to_bytes(self.src), self.eth)

    @classmethod
    def unpack(cls, data: bytes) -> 'Ethernet':
        dst, src, eth = ETHERNET_HEADER.unpack_from(data)
        return cls(dst=bytes_to_mac(dst), src=bytes_to_mac(src), eth=eth)


@dataclass(frozen=True)
class ARP:
    """ARP payload. Field names follow RFC 826 (sha/spa/tha/tpa)."""
    sha: str
    spa: str
    tha: str
    tpa: str
    oper: int = ARP_REPLY
    htype: int = ARP_HTYPE_ETHERNET
    ptype: int = ARP_PTYPE_IPV4
    hlen: int = ARP_HLEN
    plen: int = ARP_PLEN

    def pack(self) -> bytes:
        return ARP_HEADER.pack(self.htype, self.ptype, self.hlen, self.plen, self.oper,
                               mac_to_bytes(self.sha), inet_aton(self.spa),
                               mac_to_bytes(self.tha), inet_aton(self.tpa))

    @classmethod
    def unpack(cls, data: bytes) -> 'ARP':
        htype, ptype, hlen, plen, oper, sha, spa, tha, tpa = ARP_HEADER.unpack_from(data)
        return cls(sha=bytes_to_mac(sha), spa=inet_ntoa(spa),
                   tha=bytes_to_mac(tha), tpa=inet_ntoa(tpa),
                   oper=oper, htype=htype, ptype=ptype, hlen=hlen, plen=plen)


class Packet(object):
    """An Ethernet header followed by an ARP payload."""

    def __init__(self, ethernet: Ethernet, arp: ARP):
        self.ethernet = ethernet
        self.arp = arp

    @property
    def payload(self) -> bytes:
        return self.ethernet.pack() + self.arp.pack()


@dataclass(frozen=True)
class ParsedFrame:
    op: int
    sender_mac: str
    sender_ip: str
    target_mac: str
    target_ip: str
    eth_src: str
    eth_dst: str

    @property
    def is_reply(self) -> bool:
        return self.op == ARP_REPLY

    @property
    def is_request(self) -> bool:
        return self.op == ARP_REQUEST


def encode_arp(op: int, sender_mac: str, sender_ip: str, target_mac: str,
               target_ip: str, eth_src: str, eth_dst: str) -> bytes:
    """Build a 42 byte Ethernet+ARP frame. Inputs are assumed valid."""
    return Packet(Ethernet(dst=eth_dst, src=eth_src),
                  ARP(sha=sender_mac, spa=sender_ip, tha=target_mac,
                      tpa=target_ip, oper=op)).payload


def decode(data: bytes) -> Optional[ParsedFrame]:
    """
    Parse an ARP frame.

    Returns None for anything that is not a well-formed ARP-over-IPv4-over-
    Ethernet frame; trailing bytes (Ethernet padding) are ignored.
    """
    if data is None or len(data) < FRAME_LENGTH:
        return None
    try:
        ethernet = Ethernet.unpack(data)
        if ethernet.eth != ETH_TYPE_ARP:
            return None
        arp = ARP.unpack(memoryview(data)[ETHERNET_HEADER.size:])
    except (StructError, OSError, TypeError):
        return None
    if (arp.htype != ARP_HTYPE_ETHERNET or arp.ptype != ARP_PTYPE_IPV4
            or arp.hlen != ARP_HLEN or arp.plen != ARP_PLEN):
        return None
    return ParsedFrame(op=arp.oper, sender_mac=arp.sha, sender_ip=arp.spa,
                       target_mac=arp.tha, target_ip=arp.tpa,
                       eth_src=ethernet.src, eth_dst=ethernet.dst)
