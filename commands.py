"""
Command surface of the engine.

``ArpSpoofService`` owns every piece of runtime state (link handles, reply
dispatchers, the session registry) and exposes the request/response commands
used by front ends. Results are plain records with ``to_dict()``.
"""

import functools
import logging
import threading
from dataclasses import dataclass
from ipaddress import IPv4Address, AddressValueError
from typing import Callable, Dict, Iterable, List, Union

from arpspoof import BatchResult, SessionRegistry, SessionSnapshot, Spoofer, spoof_all
from dispatcher import ReplyDispatcher
from errors import ArpSpoofError, ConfigurationError, InterfaceError, SessionConflictError
from link import LinkHandle, LinkManager
from packets import Device, InterfaceInfo, list_interfaces, lookup_vendor, resolve_hostname
from resolver import MacResolver
from scanner import NetworkScanner
from settings import EngineSettings

logger = logging.getLogger(__name__)


def _surface(message: str):
    """Log errors leaving a command before handing them to the caller."""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except ArpSpoofError as exc:
                logger.error(f'[{exc.kind}] {message}: {exc}')
                raise
        return wrapper
    return decorator


def parse_ipv4(value: str, label: str = 'IP address') -> str:
    try:
        return str(IPv4Address(str(value).strip()))
    except (AddressValueError, ValueError):
        raise ConfigurationError(f'Invalid {label}', repr(value))


@dataclass
class InterfaceRuntime:
    interface: InterfaceInfo
    handle: LinkHandle
    dispatcher: ReplyDispatcher
    resolver: MacResolver
    scanner: NetworkScanner


class ArpSpoofService(object):

    def __init__(self, settings: EngineSettings = None, link_manager: LinkManager = None,
                 interface_provider: Callable[[], List[InterfaceInfo]] = list_interfaces,
                 hostname_lookup: Callable[[str], str] = resolve_hostname,
                 vendor_lookup: Callable[[str], str] = lookup_vendor):
        self.settings = settings or EngineSettings()
        self.links = link_manager or LinkManager(poll_timeout=self.settings.poll_timeout)
        self.registry = SessionRegistry()
        self._interface_provider = interface_provider
        self._hostname_lookup = hostname_lookup
        self._vendor_lookup = vendor_lookup
        self._runtimes: Dict[str, InterfaceRuntime] = {}
        self._lock = threading.Lock()
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    @_surface('Failed to get network interfaces')
    def list_interfaces(self) -> List[InterfaceInfo]:
        logger.info('Getting network interfaces')
        return list(self._interface_provider())

    @_surface('Failed to scan network')
    def scan_network(self, interface_name: str, cancel_event: threading.Event = None) -> List[Device]:
        logger.info(f'Scanning network on interface: {interface_name}')
        runtime = self._runtime(interface_name)
        return runtime.scanner.scan(runtime.interface, cancel_event)

    @_surface('Failed to start spoofing attack')
    def start_spoofing(self, target_ip: str, gateway_ip: str, interface_name: str) -> str:
        target_ip = parse_ipv4(target_ip, 'target IP')
        gateway_ip = parse_ipv4(gateway_ip, 'gateway IP')
        if target_ip == gateway_ip:
            raise ConfigurationError('Target and gateway must differ', target_ip)
        logger.info(f'Starting spoofing attack - Target: {target_ip}, Gateway: {gateway_ip}, '
                    f'Interface: {interface_name}')
        runtime = self._runtime(interface_name)
        session = Spoofer(handle=runtime.handle, resolver=runtime.resolver,
                          target_ip=target_ip, gateway_ip=gateway_ip,
                          interval=self.settings.spoof_interval,
                          max_consecutive_failures=self.settings.max_consecutive_failures,
                          restore_count=self.settings.restore_count)
        session.resolve()

        self.links.acquire(runtime.interface)
        try:
            self.registry.admit(session)
        except SessionConflictError:
            session.stop()
            self.links.release(interface_name)
            raise
        session.add_stop_callback(self._session_stopped)
        try:
            session.start()
        except ArpSpoofError:
            self.registry.remove(session.id)
            self.links.release(interface_name)
            raise
        logger.info(f'Spoofing started successfully with session ID: {session.id}')
        return session.id

    def stop_spoofing(self, session_id: str, restore: bool = False) -> bool:
        logger.info(f'Stopping spoofing session: {session_id}')
        stopped = self.registry.stop(session_id, restore=restore)
        if not stopped:
            logger.debug(f'Session {session_id} unknown or already stopped')
        return stopped

    def get_active_sessions(self) -> List[SessionSnapshot]:
        return self.registry.list_active()

    @_surface('Failed to start spoofing for all devices')
    def start_spoof_all(self, devices: Iterable[Union[Device, dict]], gateway_ip: str,
                        interface_name: str) -> BatchResult:
        gateway_ip = parse_ipv4(gateway_ip, 'gateway IP')
        devices = [device if isinstance(device, Device) else Device.from_dict(device)
                   for device in devices]
        logger.info(f'Starting spoofing for all {len(devices)} devices on interface '
                    f'{interface_name} with gateway {gateway_ip}')
        return spoof_all(devices, gateway_ip,
                         lambda ip: self.start_spoofing(ip, gateway_ip, interface_name))

    def close(self):
        """Tear down sessions, then dispatchers, then link handles."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            runtimes = list(self._runtimes.values())
            self._runtimes.clear()
        for session in self.registry.sessions():
            self.registry.stop(session.id)
        for runtime in runtimes:
            runtime.dispatcher.stop()
        for runtime in runtimes:
            self.links.release(runtime.interface.name)
        self.links.close_all()
        logger.info('Engine shut down')

    def _session_stopped(self, session: Spoofer):
        self.registry.remove(session.id)
        self.links.release(session.interface)

    def _interface(self, name: str) -> InterfaceInfo:
        for interface in self._interface_provider():
            if interface.name == name:
                return interface
        raise InterfaceError(f"Interface '{name}' not found")

    def _runtime(self, name: str) -> InterfaceRuntime:
        with self._lock:
            if self._closed:
                raise InterfaceError('Engine is shut down')
            runtime = self._runtimes.get(name)
            if runtime is not None:
                return runtime
            interface = self._interface(name)
            if interface.primary is None:
                raise InterfaceError(f'No IPv4 address found on interface {name}')
            handle = self.links.acquire(interface)
            dispatcher = ReplyDispatcher(handle)
            dispatcher.start()
            runtime = InterfaceRuntime(
                interface=interface, handle=handle, dispatcher=dispatcher,
                resolver=MacResolver(dispatcher, str(interface.primary.ip),
                                     attempts=self.settings.resolve_attempts,
                                     timeout=self.settings.resolve_timeout),
                scanner=NetworkScanner(dispatcher, self.settings,
                                       hostname_lookup=self._hostname_lookup,
                                       vendor_lookup=self._vendor_lookup))
            self._runtimes[name] = runtime
            return runtime
