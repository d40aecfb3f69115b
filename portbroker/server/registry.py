import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set

from .errors import DuplicateIdError, NotFoundError

logger = logging.getLogger("portbroker-server")


class TunnelState(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass
class Tunnel:
    """A registered mapping from a public port to a local port"""
    id: str
    local_port: int
    public_port: int
    api_key: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    state: TunnelState = TunnelState.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.state == TunnelState.ACTIVE


class Registry:
    """In-memory map of tunnels currently forwarding.

    Owned by the lifecycle controller and only touched from its event loop,
    so no locking is needed: none of the methods await.
    """

    def __init__(self):
        self._tunnels: Dict[str, Tunnel] = {}
        # ids stay reserved after removal so a stopped id is never reissued
        self._retired: Set[str] = set()

    def put(self, tunnel: Tunnel) -> None:
        if tunnel.id in self._tunnels or tunnel.id in self._retired:
            raise DuplicateIdError(f"Tunnel id {tunnel.id} already exists")
        self._tunnels[tunnel.id] = tunnel
        logger.debug(f"     Registry: added tunnel {tunnel.id} (public port {tunnel.public_port})")

    def get(self, tunnel_id: str) -> Tunnel:
        tunnel = self._tunnels.get(tunnel_id)
        if tunnel is None:
            raise NotFoundError("Tunnel not found")
        return tunnel

    def remove(self, tunnel_id: str) -> Tunnel:
        tunnel = self._tunnels.pop(tunnel_id, None)
        if tunnel is None:
            raise NotFoundError("Tunnel not found")
        self._retired.add(tunnel_id)
        logger.debug(f"     Registry: removed tunnel {tunnel_id}")
        return tunnel

    def active_count(self) -> int:
        return sum(1 for t in self._tunnels.values() if t.is_active)

    def find_by_port(self, public_port: int) -> Optional[Tunnel]:
        """Return the active tunnel holding public_port, if any"""
        for tunnel in self._tunnels.values():
            if tunnel.is_active and tunnel.public_port == public_port:
                return tunnel
        return None

    def list(self) -> List[Tunnel]:
        return list(self._tunnels.values())

    def __contains__(self, tunnel_id: str) -> bool:
        return tunnel_id in self._tunnels

    def __len__(self) -> int:
        return len(self._tunnels)
