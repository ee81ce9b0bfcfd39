"""Project-wide logger.

Every module logs through ``campusfix_logger``; the level comes from the
``LOG_LEVEL`` environment variable.
"""

import logging
import os
import sys

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
DEBUG = os.environ.get('DEBUG', 'false').lower() in ('1', 'true', 'yes')

LOG_FORMAT = '%(asctime)s - %(name)s:%(levelname)s: %(filename)s:%(lineno)d - %(message)s'


class ExtraFieldsFormatter(logging.Formatter):
    """Append ``extra={...}`` fields passed to the logger to the message."""

    _reserved = set(
        logging.LogRecord('', 0, '', 0, '', (), None).__dict__.keys()
    ) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in self._reserved and not key.startswith('_')
        }
        if extras:
            rendered = ' '.join(f'{key}={value}' for key, value in sorted(extras.items()))
            message = f'{message} [{rendered}]'
        return message


def get_console_handler(log_level: str = LOG_LEVEL) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)
    handler.setFormatter(ExtraFieldsFormatter(LOG_FORMAT))
    return handler


campusfix_logger = logging.getLogger('campusfix')
campusfix_logger.setLevel('DEBUG' if DEBUG else LOG_LEVEL)
if not campusfix_logger.handlers:
    campusfix_logger.addHandler(get_console_handler())
