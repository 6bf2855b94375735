"""
Project Name: Meshflash
Copyright (c) 2025 Henrik Olsson

Permission is hereby granted under MIT license.

Custom Logging Utilities
"""

import logging
import sys

VERBOSE_FORMAT = "%(levelname)-7s:%(name)-13s:%(lineno)4d: %(message)s"
PLAIN_FORMAT = "%(message)s"


class SingleLineStatusHandler(logging.StreamHandler):
    """
    A logging handler that can overwrite a single line in the console.
    It looks for a 'status' attribute in the log record's 'extra' dict.

    - status='start': prints the message without a newline.
    - status='end': prints the message on the same line (using \\r) and adds a newline.

    Normal log records will clear any active status line before being printed.
    """

    def __init__(self, stream=None):
        super().__init__(stream or sys.stdout)
        self._status_line_active = False

    def emit(self, record):
        # A normal record must not overwrite a pending status line.
        if self._status_line_active and not hasattr(record, "status"):
            self.stream.write(self.terminator)
            self._status_line_active = False

        try:
            msg = self.format(record)
            status = getattr(record, "status", None)

            if status == "start":
                self.stream.write(msg)
                self._status_line_active = True
            elif status == "end":
                self.stream.write("\r" + msg + self.terminator)
                self._status_line_active = False
            else:
                self.stream.write(msg + self.terminator)
                self._status_line_active = False

            self.flush()
        except Exception:
            self.handleError(record)


def setup_logging(verbose: bool = False, stream=None) -> SingleLineStatusHandler:
    """
    Installs a SingleLineStatusHandler on the root logger, replacing any
    existing handlers. Hosts call this once at startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    handler = SingleLineStatusHandler(stream)
    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT if verbose else PLAIN_FORMAT))
    root_logger.handlers = [handler]
    return handler


def status_update_active(logger: logging.Logger) -> bool:
    """True when single-line status messages should be emitted (INFO but not DEBUG)."""
    return logger.isEnabledFor(logging.INFO) and not logger.isEnabledFor(logging.DEBUG)
