"""Ticket label printing.

Labels are rendered as ZPL and pushed to a network printer over a raw
TCP socket (port 9100 on most Zebra-compatible printers).  Without a
configured printer the worker runs in simulation mode and only logs the
label.  Printing is best-effort: a failure is logged and never reaches
the client that asked for the ticket.
"""

from __future__ import annotations

import logging
import socket
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


def render_label(code: str, category_name: str, issued_at: Optional[datetime] = None) -> str:
    issued_at = issued_at or datetime.now()
    return (
        "^XA\n"
        "^CI28\n"
        f"^FO40,30^A0N,40,40^FD{category_name}^FS\n"
        f"^FO40,90^A0N,140,140^FD{code}^FS\n"
        f"^FO40,250^A0N,30,30^FD{issued_at.strftime('%d/%m/%Y %H:%M')}^FS\n"
        "^XZ\n"
    )


class LabelPrinter:
    def __init__(self, host: Optional[str] = None, port: int = 9100, timeout: float = 3.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    @property
    def simulated(self) -> bool:
        return not self.host

    def send(self, label: str) -> None:
        with socket.create_connection((self.host, self.port), timeout=self.timeout) as conn:
            conn.sendall(label.encode("utf-8"))

    def print_ticket(self, code: str, category_name: str) -> bool:
        """Print a ticket label; returns whether it went out."""
        label = render_label(code, category_name)
        if self.simulated:
            logger.info("[SIMULATION] Label for %s (%s)", code, category_name)
            logger.debug("ZPL:\n%s", label)
            return True
        try:
            self.send(label)
        except OSError as e:
            logger.error("Failed to print ticket %s on %s:%s: %s", code, self.host, self.port, e)
            return False
        logger.info("Printed ticket %s", code)
        return True
