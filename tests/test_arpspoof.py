"""Tests for spoofing sessions and the session registry."""

import errno
import threading
import time

import pytest

from arpspoof import SessionRegistry, SessionState, spoof_all
from conftest import ATTACKER_MAC, GATEWAY_MAC, TARGET_MAC, wait_for
from errors import (ConfigurationError, NetworkError, ResolutionError, SessionConflictError,
                    SpoofingError)
from packets import Device
from protocols import ARP_REPLY

TARGET = '192.168.1.50'
GATEWAY = '192.168.1.1'


def _start(service):
    session_id = service.start_spoofing(TARGET, GATEWAY, 'eth-test')
    return service.registry.get(session_id)


class TestSessionLifecycle:
    """Tests for the poison loop of a single session."""

    def test_counter_grows_while_active(self, service):
        session = _start(service)
        assert session.is_active
        assert (session.target_mac, session.gateway_mac) == (TARGET_MAC, GATEWAY_MAC)
        seen = []
        for _ in range(5):
            seen.append(service.get_active_sessions()[0].packets_sent)
            time.sleep(0.05)
        assert seen == sorted(seen)
        assert wait_for(lambda: session.packets_sent > 0)

    def test_poison_frames_claim_the_attacker_mac(self, lan, service):
        session = _start(service)
        assert wait_for(lambda: session.packets_sent >= 2)
        forged = [f for f in lan.sent_frames() if f.op == ARP_REPLY][:2]
        assert {(f.eth_dst, f.sender_ip) for f in forged} == {(TARGET_MAC, GATEWAY),
                                                             (GATEWAY_MAC, TARGET)}
        assert all(f.sender_mac == ATTACKER_MAC for f in forged)

    def test_stop_is_idempotent(self, service):
        session = _start(service)
        assert wait_for(lambda: session.packets_sent > 0)
        assert service.stop_spoofing(session.id) is True
        assert service.stop_spoofing(session.id) is False
        assert session.state is SessionState.STOPPED
        frozen = session.packets_sent
        time.sleep(0.2)
        assert session.packets_sent == frozen
        assert service.get_active_sessions() == []

    def test_stop_unknown_session(self, service):
        assert service.stop_spoofing('no-such-session') is False

    def test_restore_sends_real_addresses(self, lan, service, settings):
        session = _start(service)
        assert wait_for(lambda: session.packets_sent > 0)
        service.stop_spoofing(session.id, restore=True)
        restored = lan.sent_frames()[-2 * settings.restore_count:]
        assert {(f.sender_ip, f.sender_mac) for f in restored} == {(GATEWAY, GATEWAY_MAC),
                                                                   (TARGET, TARGET_MAC)}

    def test_no_restore_by_default(self, lan, service):
        session = _start(service)
        assert wait_for(lambda: session.packets_sent > 0)
        service.stop_spoofing(session.id)
        assert all(f.sender_mac == ATTACKER_MAC for f in lan.sent_frames() if f.op == ARP_REPLY)

    def test_transient_failures_keep_session_alive(self, lan, service):
        session = _start(service)
        assert wait_for(lambda: session.packets_sent > 0)
        lan.fail_sends(3)
        assert wait_for(lambda: session.failed_sends == 3)
        sent = session.packets_sent
        assert wait_for(lambda: session.packets_sent > sent)
        assert session.is_active
        assert session.last_error

    def test_persistent_failures_stop_session(self, lan, service, link_manager):
        session = _start(service)
        lan.fail_forever(errno.ENOBUFS)
        assert wait_for(lambda: session.state is SessionState.STOPPED)
        assert wait_for(lambda: service.get_active_sessions() == [])
        assert wait_for(lambda: link_manager.refcount('eth-test') == 1)

    def test_closed_link_stops_session(self, lan, service):
        session = _start(service)
        lan.fail_forever(errno.EBADF)
        assert wait_for(lambda: session.state is SessionState.STOPPED)
        assert wait_for(lambda: service.registry.get(session.id) is None)
        assert 'closed' in session.last_error

    def test_start_twice_is_rejected(self, service):
        session = _start(service)
        with pytest.raises(SpoofingError):
            session.start()

    def test_active_session_cannot_be_resolved_again(self, service):
        session = _start(service)
        with pytest.raises(SpoofingError):
            session.resolve()
        assert session.is_active
        assert service.stop_spoofing(session.id) is True
        assert session.state is SessionState.STOPPED

    def test_stopped_session_is_never_revived(self, service, link_manager):
        """A stopped session stays stopped and releases its link only once."""
        session = _start(service)
        assert service.stop_spoofing(session.id) is True
        assert link_manager.refcount('eth-test') == 1
        with pytest.raises(SpoofingError):
            session.resolve()
        with pytest.raises(SpoofingError):
            session.start()
        assert session.state is SessionState.STOPPED
        assert session.stop() is False
        assert link_manager.refcount('eth-test') == 1
        assert service.scan_network('eth-test')


class TestAdmission:
    """Tests for session creation and the one-session-per-target rule."""

    def test_unreachable_gateway(self, lan, service, link_manager):
        del lan.hosts[GATEWAY]
        with pytest.raises(NetworkError) as exc_info:
            service.start_spoofing(TARGET, GATEWAY, 'eth-test')
        assert isinstance(exc_info.value, ResolutionError)
        assert isinstance(exc_info.value, SpoofingError)
        assert GATEWAY in str(exc_info.value)
        assert len(service.registry) == 0
        assert link_manager.refcount('eth-test') == 1

    def test_duplicate_target_conflicts(self, service):
        _start(service)
        with pytest.raises(SessionConflictError):
            service.start_spoofing(TARGET, GATEWAY, 'eth-test')
        assert len(service.registry) == 1

    def test_concurrent_admission(self, service, link_manager):
        results, errors = [], []
        barrier = threading.Barrier(2)

        def attempt():
            barrier.wait()
            try:
                results.append(service.start_spoofing(TARGET, GATEWAY, 'eth-test'))
            except SessionConflictError as exc:
                errors.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert len(results) == 1
        assert len(errors) == 1
        assert len(service.registry) == 1
        assert link_manager.refcount('eth-test') == 2

    def test_after_stop_target_can_be_spoofed_again(self, service):
        first = _start(service)
        service.stop_spoofing(first.id)
        second = _start(service)
        assert second.id != first.id
        assert second.is_active


class TestSpoofAll:
    """Tests for batch session creation."""

    def test_gateway_skipped_and_failures_collected(self, service):
        devices = [Device(GATEWAY, GATEWAY_MAC), Device(TARGET, TARGET_MAC),
                   {'ip': '192.168.1.77', 'mac': '02:00:00:00:00:77'}]
        result = service.start_spoof_all(devices, GATEWAY, 'eth-test')
        assert len(result.session_ids) == 1
        assert list(result.failures) == ['192.168.1.77']
        assert isinstance(result.failures['192.168.1.77'], NetworkError)
        assert [s.target_ip for s in service.get_active_sessions()] == [TARGET]

    def test_gateway_is_normalised_before_skipping(self, service):
        devices = [Device(GATEWAY, GATEWAY_MAC), Device(TARGET, TARGET_MAC)]
        result = service.start_spoof_all(devices, f' {GATEWAY} ', 'eth-test')
        assert result.failures == {}
        assert len(result.session_ids) == 1
        assert service.get_active_sessions()[0].gateway_ip == GATEWAY

    def test_invalid_gateway_fails_the_batch(self, lan, service):
        with pytest.raises(ConfigurationError):
            service.start_spoof_all([Device(TARGET, TARGET_MAC)], 'gateway', 'eth-test')
        assert lan.sent == []

    def test_batch_never_aborts(self):
        started = []

        def start(ip):
            if ip.endswith('.2'):
                raise SessionConflictError('busy')
            started.append(ip)
            return f'id-{ip}'

        devices = [Device(f'10.0.0.{n}', None) for n in range(1, 5)]
        result = spoof_all(devices, '10.0.0.1', start)
        assert started == ['10.0.0.3', '10.0.0.4']
        assert result.session_ids == ['id-10.0.0.3', 'id-10.0.0.4']
        assert list(result.failures) == ['10.0.0.2']


class _StubSession(object):

    def __init__(self, id, target_ip, interface):
        self.id = id
        self.target_ip = target_ip
        self.interface = interface

    @property
    def key(self):
        return self.target_ip, self.interface


class TestSessionRegistry:

    def test_same_target_on_other_interface_is_allowed(self):
        registry = SessionRegistry()
        registry.admit(_StubSession('a', '10.0.0.5', 'eth0'))
        registry.admit(_StubSession('b', '10.0.0.5', 'eth1'))
        assert len(registry) == 2
        assert [s.id for s in registry.sessions('eth1')] == ['b']

    def test_remove_frees_the_key(self):
        registry = SessionRegistry()
        registry.admit(_StubSession('a', '10.0.0.5', 'eth0'))
        assert registry.remove('a').id == 'a'
        assert registry.remove('a') is None
        registry.admit(_StubSession('b', '10.0.0.5', 'eth0'))
        assert registry.get('b') is not None
