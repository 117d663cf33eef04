"""
Engine configuration.

Defaults live as module constants; ``EngineSettings.from_env()`` applies
``ARPSPOOF_*`` environment overrides and the console layers its flags on top.
"""

import os
from dataclasses import dataclass, fields, replace

from errors import ConfigurationError

# Scanning
SWEEP_WINDOW = 3.0          # seconds spent collecting replies after the requests
BURST_SIZE = 32             # requests sent back to back before pausing
BURST_PAUSE = 0.01
MAX_SCAN_HOSTS = 1024       # larger subnets are clamped to the local /24
HOSTNAME_TIMEOUT = 1.0

# MAC resolution
RESOLVE_ATTEMPTS = 3
RESOLVE_TIMEOUT = 1.0

# Spoofing
SPOOF_INTERVAL = 1.0
MAX_CONSECUTIVE_FAILURES = 10
RESTORE_COUNT = 5

# Link access
POLL_TIMEOUT = 0.2

# Logging
LOG_LEVEL = 'INFO'
LOG_FILE = 'logs/arp_spoofer.log'

ENV_PREFIX = 'ARPSPOOF_'


@dataclass(frozen=True)
class EngineSettings:
    sweep_window: float = SWEEP_WINDOW
    burst_size: int = BURST_SIZE
    burst_pause: float = BURST_PAUSE
    max_scan_hosts: int = MAX_SCAN_HOSTS
    hostname_timeout: float = HOSTNAME_TIMEOUT
    resolve_attempts: int = RESOLVE_ATTEMPTS
    resolve_timeout: float = RESOLVE_TIMEOUT
    spoof_interval: float = SPOOF_INTERVAL
    max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES
    restore_count: int = RESTORE_COUNT
    poll_timeout: float = POLL_TIMEOUT
    log_level: str = LOG_LEVEL
    log_file: str = LOG_FILE

    def __post_init__(self):
        for name in ('sweep_window', 'resolve_timeout', 'spoof_interval', 'poll_timeout'):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f'{name} must be positive', str(getattr(self, name)))
        for name in ('burst_size', 'max_scan_hosts', 'resolve_attempts',
                     'max_consecutive_failures'):
            if getattr(self, name) < 1:
                raise ConfigurationError(f'{name} must be at least 1', str(getattr(self, name)))
        if self.burst_pause < 0 or self.hostname_timeout < 0 or self.restore_count < 0:
            raise ConfigurationError('negative values are not allowed')

    @classmethod
    def from_env(cls, environ=None) -> 'EngineSettings':
        environ = os.environ if environ is None else environ
        overrides = {}
        for field in fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None:
                continue
            try:
                overrides[field.name] = field.type(raw) if field.type is not str else raw
            except ValueError:
                raise ConfigurationError(f'Invalid value for {ENV_PREFIX}{field.name.upper()}', raw)
        return cls(**overrides)

    def updated(self, **changes) -> 'EngineSettings':
        """Return a copy with the non-None ``changes`` applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})
