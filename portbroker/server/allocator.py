import logging
from collections import deque
from typing import Deque, Optional, Set

from .errors import ExhaustedRangeError
from .registry import Registry

logger = logging.getLogger("portbroker-server")


class PortAllocator:
    """Hands out public ports from [base_port, base_port + count).

    Ports that were never issued go out first, in ascending order. Released
    ports join a FIFO reuse queue and are only handed out again once the fresh
    ports run out, least recently released first. A port held by an active
    tunnel in the registry is never issued.
    """

    def __init__(self, registry: Registry, base_port: int, count: int = 1000):
        if count < 1:
            raise ValueError("Port range must contain at least one port")
        if base_port < 1 or base_port + count - 1 > 65535:
            raise ValueError(f"Port range {base_port}-{base_port + count - 1} is outside 1-65535")
        self.registry = registry
        self.base_port = base_port
        self.count = count
        self._next_fresh = base_port
        self._released: Deque[int] = deque()
        self._in_use: Set[int] = set()

    @property
    def end_port(self) -> int:
        """Last port of the range (inclusive)"""
        return self.base_port + self.count - 1

    @property
    def in_use(self) -> Set[int]:
        return set(self._in_use)

    def allocate(self) -> int:
        if len(self._in_use) >= self.count:
            raise ExhaustedRangeError(
                f"No public port left in {self.base_port}-{self.end_port} "
                f"({self.registry.active_count()} active tunnels)"
            )

        port = self._take_fresh()
        if port is None:
            port = self._take_released()
        if port is None:
            raise ExhaustedRangeError(f"No public port left in {self.base_port}-{self.end_port}")

        self._in_use.add(port)
        logger.debug(f"     Allocated public port {port}")
        return port

    def _take_fresh(self) -> Optional[int]:
        while self._next_fresh <= self.end_port:
            port = self._next_fresh
            self._next_fresh += 1
            if port not in self._in_use and self.registry.find_by_port(port) is None:
                return port
        return None

    def _take_released(self) -> Optional[int]:
        for _ in range(len(self._released)):
            port = self._released.popleft()
            if port not in self._in_use and self.registry.find_by_port(port) is None:
                return port
        return None

    def reserve(self, port: int) -> None:
        """Mark a specific port as taken, e.g. for a tunnel restored at startup"""
        if not self.base_port <= port <= self.end_port:
            raise ValueError(f"Port {port} is outside {self.base_port}-{self.end_port}")
        if port in self._in_use:
            raise ExhaustedRangeError(f"Public port {port} is already allocated")
        self._in_use.add(port)
        if port in self._released:
            self._released.remove(port)

    def release(self, port: int) -> None:
        if port not in self._in_use:
            return
        self._in_use.discard(port)
        self._released.append(port)
        logger.debug(f"     Released public port {port}")
