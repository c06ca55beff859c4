"""Guest SSH readiness polling."""

from __future__ import annotations

import socket
import threading
import time

from qman.constants import PROBE_ATTEMPTS, PROBE_INTERVAL
from qman.models import ProbeHandle
from qman.utils import log


class ReadinessProbe:
    """Bounded TCP connect loop against a forwarded guest port.

    The outcome is advisory: a timeout is reported but never stops the VM.
    """

    def __init__(
        self,
        max_attempts: int = PROBE_ATTEMPTS,
        interval: float = PROBE_INTERVAL,
        host: str = "127.0.0.1",
        connect_timeout: float = 1.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.interval = interval
        self.host = host
        self.connect_timeout = connect_timeout

    def port_open(self, port: int) -> bool:
        try:
            with socket.create_connection((self.host, port), timeout=self.connect_timeout):
                return True
        except OSError:
            return False

    def wait_for_port(self, port: int) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            if self.port_open(port):
                log("DEBUG", f"Port {port} accepted a connection (attempt {attempt})")
                return True
            if attempt < self.max_attempts:
                time.sleep(self.interval)
        return False

    def start_background(self, port: int) -> ProbeHandle:
        handle = ProbeHandle(port=port)

        def _probe() -> None:
            handle.ready = self.wait_for_port(port)

        handle.thread = threading.Thread(target=_probe, name=f"probe-{port}", daemon=True)
        handle.thread.start()
        return handle
