"""SSH/VNC port selection for new VMs."""

from __future__ import annotations

import random
from typing import Collection, Optional, Tuple

from qman.constants import PORT_ALLOC_ATTEMPTS
from qman.models import QmanConfig
from qman.utils import log


class PortAllocator:
    """Random draws from fixed ranges.

    Draws avoid ports already held by existing records, with a bounded number
    of redraws. Live OS port usage is not checked.
    """

    def __init__(
        self,
        config: QmanConfig,
        rng: Optional[random.Random] = None,
        attempts: int = PORT_ALLOC_ATTEMPTS,
    ) -> None:
        self.ssh_range: Tuple[int, int] = (config.ssh_port_min, config.ssh_port_max)
        self.vnc_range: Tuple[int, int] = (config.vnc_port_min, config.vnc_port_max)
        self.rng = rng or random.Random()
        self.attempts = attempts

    def _draw(self, label: str, bounds: Tuple[int, int], taken: Collection[int]) -> int:
        port = self.rng.randint(*bounds)
        for _ in range(self.attempts - 1):
            if port not in taken:
                return port
            port = self.rng.randint(*bounds)
        if port in taken:
            log("WARN", f"Could not find a free {label} port in {bounds[0]}-{bounds[1]}; reusing {port}")
        return port

    def allocate_ssh_port(self, taken: Collection[int] = ()) -> int:
        return self._draw("SSH", self.ssh_range, taken)

    def allocate_vnc_port(self, taken: Collection[int] = ()) -> int:
        return self._draw("VNC", self.vnc_range, taken)
