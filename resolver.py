"""
One-shot IP to MAC resolution over the reply dispatcher.
"""

import logging
import threading

from dispatcher import ReplyDispatcher
from errors import LinkClosedError, NetworkError
from protocols import ARP_REQUEST, BROADCAST_MAC, ZERO_MAC, encode_arp

logger = logging.getLogger(__name__)


class MacResolver(object):

    def __init__(self, dispatcher: ReplyDispatcher, source_ip: str,
                 attempts: int = 3, timeout: float = 1.0):
        self.dispatcher = dispatcher
        self.handle = dispatcher.handle
        self.source_ip = source_ip
        self.attempts = attempts
        self.timeout = timeout

    def request_frame(self, ip: str) -> bytes:
        return encode_arp(ARP_REQUEST, self.handle.mac, self.source_ip, ZERO_MAC, ip,
                          eth_src=self.handle.mac, eth_dst=BROADCAST_MAC)

    def resolve(self, ip: str, cancel_event: threading.Event = None) -> str:
        """
        Return the MAC address that answers for ``ip``.

        Raises NetworkError once every attempt timed out (or was cancelled).
        """
        cancel_event = cancel_event or threading.Event()
        frame = self.request_frame(ip)
        for attempt in range(1, self.attempts + 1):
            if cancel_event.is_set():
                break
            waiter = self.dispatcher.expect(ip)
            try:
                self.handle.send(frame)
                reply = waiter.wait(self.timeout, cancel_event)
            except LinkClosedError:
                raise
            except NetworkError as exc:
                logger.warning(f'ARP request for {ip} failed (attempt {attempt}): {exc}')
                cancel_event.wait(self.timeout)
                continue
            finally:
                self.dispatcher.discard(ip, waiter)
            if reply is not None:
                logger.debug(f'Resolved {ip} -> {reply.sender_mac} (attempt {attempt})')
                return reply.sender_mac
            logger.debug(f'No ARP reply from {ip} (attempt {attempt}/{self.attempts})')
        raise NetworkError(f'Host {ip} unreachable: no ARP reply',
                           f'{self.attempts} attempts of {self.timeout}s')
