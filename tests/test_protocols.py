"""Tests for the Ethernet/ARP frame codec."""

import struct

import pytest

import protocols
from protocols import (ARP, ARP_REPLY, ARP_REQUEST, BROADCAST_MAC, FRAME_LENGTH, ZERO_MAC,
                       Ethernet, Packet, decode, encode_arp)


def _frame(op=ARP_REQUEST):
    return encode_arp(op, '02:00:00:00:00:0a', '192.168.1.10', ZERO_MAC, '192.168.1.50',
                      eth_src='02:00:00:00:00:0a', eth_dst=BROADCAST_MAC)


class TestEncode:
    """Tests for encode_arp."""

    def test_fixed_length(self):
        """Encoded frames are exactly 14 + 28 bytes."""
        assert len(_frame()) == FRAME_LENGTH == 42

    def test_header_layout(self):
        """EtherType and ARP constants land at their wire offsets."""
        frame = _frame(ARP_REPLY)
        assert frame[0:6] == b'\xff' * 6
        assert frame[6:12] == bytes.fromhex('02000000000a')
        assert struct.unpack('!H', frame[12:14])[0] == 0x0806
        htype, ptype, hlen, plen, oper = struct.unpack('!HHBBH', frame[14:22])
        assert (htype, ptype, hlen, plen, oper) == (1, 0x0800, 6, 4, ARP_REPLY)
        assert frame[28:32] == bytes([192, 168, 1, 10])
        assert frame[38:42] == bytes([192, 168, 1, 50])

    def test_packet_payload_matches_encode(self):
        """Packet(Ethernet, ARP).payload is the same wire image as encode_arp."""
        packet = Packet(Ethernet(dst=BROADCAST_MAC, src='02:00:00:00:00:0a'),
                        ARP(sha='02:00:00:00:00:0a', spa='192.168.1.10',
                            tha=ZERO_MAC, tpa='192.168.1.50', oper=ARP_REQUEST))
        assert packet.payload == _frame()


class TestDecode:
    """Tests for decode."""

    @pytest.mark.parametrize('op,sender_mac,sender_ip,target_mac,target_ip', [
        (ARP_REQUEST, '02:00:00:00:00:0a', '192.168.1.10', ZERO_MAC, '192.168.1.1'),
        (ARP_REPLY, 'aa:bb:cc:dd:ee:ff', '10.0.0.1', '00:11:22:33:44:55', '10.0.0.254'),
        (ARP_REPLY, 'ff:ff:ff:ff:ff:fe', '255.255.255.255', BROADCAST_MAC, '0.0.0.0'),
    ])
    def test_round_trip(self, op, sender_mac, sender_ip, target_mac, target_ip):
        """decode(encode(x)) gives back every field of x."""
        frame = encode_arp(op, sender_mac, sender_ip, target_mac, target_ip,
                           eth_src=sender_mac, eth_dst=target_mac)
        parsed = decode(frame)
        assert parsed is not None
        assert (parsed.op, parsed.sender_mac, parsed.sender_ip,
                parsed.target_mac, parsed.target_ip) == (op, sender_mac, sender_ip,
                                                         target_mac, target_ip)
        assert parsed.eth_src == sender_mac
        assert parsed.eth_dst == target_mac

    def test_rejects_every_short_frame(self):
        """Every truncation below the minimum length is rejected."""
        frame = _frame()
        for length in range(FRAME_LENGTH):
            assert decode(frame[:length]) is None

    def test_rejects_none(self):
        assert decode(None) is None

    def test_accepts_ethernet_padding(self):
        """Frames padded to the 60 byte Ethernet minimum still decode."""
        parsed = decode(_frame() + b'\x00' * 18)
        assert parsed is not None
        assert parsed.target_ip == '192.168.1.50'

    @pytest.mark.parametrize('offset,fmt,value', [
        (12, '!H', 0x0800),  # EtherType IPv4
        (14, '!H', 6),       # hardware type IEEE 802
        (16, '!H', 0x86DD),  # protocol type IPv6
        (18, '!B', 8),       # hardware address length
        (19, '!B', 16),      # protocol address length
    ])
    def test_rejects_mismatched_type_fields(self, offset, fmt, value):
        frame = bytearray(_frame())
        struct.pack_into(fmt, frame, offset, value)
        assert decode(bytes(frame)) is None

    def test_request_and_reply_flags(self):
        assert decode(_frame(ARP_REQUEST)).is_request
        assert decode(_frame(ARP_REPLY)).is_reply


class TestMacHelpers:
    """Tests for MAC address helpers."""

    def test_mac_round_trip(self):
        assert protocols.bytes_to_mac(protocols.mac_to_bytes('AA-BB-CC-00-11-22')) == 'aa:bb:cc:00:11:22'

    @pytest.mark.parametrize('mac,valid', [
        ('aa:bb:cc:dd:ee:ff', True),
        ('AA-BB-CC-DD-EE-FF', True),
        ('aa:bb:cc:dd:ee', False),
        ('not a mac', False),
        (None, False),
    ])
    def test_is_valid_mac(self, mac, valid):
        assert protocols.is_valid_mac(mac) is valid
