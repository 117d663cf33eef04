"""
Error taxonomy shared by every layer of the engine.

Each error carries a machine-readable ``kind`` so that callers sitting on the
other side of the command surface can react (e.g. prompt for elevated
privileges on PERMISSION_ERROR instead of retrying).
"""

from typing import Optional


class ArpSpoofError(Exception):
    kind = 'UNKNOWN_ERROR'

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        if self.details:
            return f'{self.message}: {self.details}'
        return self.message

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message, 'details': self.details}


class NetworkError(ArpSpoofError):
    """Send, receive or resolution failure. Usually transient."""
    kind = 'NETWORK_ERROR'


class LinkClosedError(NetworkError):
    """The interface handle is closed; nothing sent on it will ever succeed."""


class InterfaceError(ArpSpoofError):
    kind = 'INTERFACE_ERROR'


class PrivilegeError(InterfaceError, PermissionError):
    """Raw access to the interface was denied by the OS."""
    kind = 'PERMISSION_ERROR'


class SpoofingError(ArpSpoofError):
    kind = 'SPOOFING_ERROR'


class SessionConflictError(SpoofingError):
    """Another active session already claims the (target, interface) pair."""


class ResolutionError(SpoofingError, NetworkError):
    """A session could not start because a peer never answered ARP."""
    kind = 'NETWORK_ERROR'


class ResourceError(ArpSpoofError):
    kind = 'SYSTEM_ERROR'


class ConfigurationError(ArpSpoofError, ValueError):
    kind = 'CONFIG_ERROR'
