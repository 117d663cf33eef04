"""
Logging setup: console plus an appending log file.
"""

import logging
import os

LOG_FORMAT = '%(asctime)s [%(levelname)s] - %(name)s: %(message)s'

_configured = False


def setup_logging(level: str = 'INFO', log_file: str = None) -> logging.Logger:
    """
    Configure the root logger once. Later calls only adjust the level.

    Args:
        level: Logging level name (DEBUG, INFO, ...)
        log_file: Path of the log file; None disables file output
    """
    global _configured
    root = logging.getLogger()
    root.setLevel(level.upper())
    if _configured:
        return root

    handlers = [logging.StreamHandler()]
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as exc:
            logging.getLogger(__name__).warning(f'Cannot open log file {log_file}: {exc}')

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)

    # scapy is chatty at INFO about missing routes/manuf files
    logging.getLogger('scapy.runtime').setLevel(logging.ERROR)
    _configured = True
    root.debug('Logger initialized')
    return root
