"""
Tunnel lifecycle controller.

Sequences registration, stop and status against the registry, the port
allocator, the forwarders and the database. All methods run on the server's
event loop; database calls are pushed to a worker thread and awaited.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Type

from .allocator import PortAllocator
from .config import Config
from .database import Database
from .errors import (
    AuthError, BindError, DuplicateIdError, ExhaustedRangeError, ForbiddenError,
    NotFoundError, PersistenceError, ValidationError,
)
from .forwarder import Forwarder
from .registry import Registry, Tunnel, TunnelState

logger = logging.getLogger("portbroker-server")


@dataclass
class TunnelDescriptor:
    tunnel_id: str
    local_port: int
    public_port: int
    public_address: str
    region: str
    status_page: str
    created_at: datetime


def parse_port(value: Any, field: str) -> int:
    """Validate a port number supplied by a client"""
    if value is None or value == "":
        raise ValidationError(f"Missing {field}")
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer between 1 and 65535")
    if isinstance(value, str):
        value = value.strip()
        # isdigit alone admits non-ASCII digits such as "²" that int() rejects
        if not (value.isascii() and value.isdigit()) or len(value) > 5:
            raise ValidationError(f"{field} must be an integer between 1 and 65535")
        value = int(value)
    if not isinstance(value, int) or not 1 <= value <= 65535:
        raise ValidationError(f"{field} must be an integer between 1 and 65535")
    return value


class LifecycleController:
    def __init__(self, db: Database, config: Type[Config] = Config,
                 forwarder_factory: Callable[..., Forwarder] = Forwarder):
        self.db = db
        self.config = config
        self.registry = Registry()
        self.allocator = PortAllocator(self.registry, config.INITIAL_PUBLIC_PORT, config.PUBLIC_PORT_COUNT)
        self.forwarder_factory = forwarder_factory
        self._forwarders: Dict[str, Forwarder] = {}

    def _describe(self, tunnel: Tunnel) -> TunnelDescriptor:
        return TunnelDescriptor(
            tunnel_id=tunnel.id,
            local_port=tunnel.local_port,
            public_port=tunnel.public_port,
            public_address=self.config.public_address(tunnel.id, tunnel.public_port),
            region=self.config.REGION,
            status_page=self.config.status_page(tunnel.id),
            created_at=tunnel.created_at,
        )

    def _new_forwarder(self, tunnel: Tunnel) -> Forwarder:
        return self.forwarder_factory(
            tunnel.id, tunnel.local_port, tunnel.public_port,
            target_host=self.config.TARGET_HOST,
            bind_host=self.config.BIND_HOST,
            connect_timeout=self.config.CONNECT_TIMEOUT,
        )

    def get_forwarder(self, tunnel_id: str) -> Optional[Forwarder]:
        return self._forwarders.get(tunnel_id)

    def active_count(self) -> int:
        return self.registry.active_count()

    async def _require_api_key(self, api_key: Optional[str]) -> str:
        if not api_key:
            raise AuthError("Missing API key")
        if not isinstance(api_key, str):
            raise AuthError("Invalid API key")
        if not await asyncio.to_thread(self.db.validate_api_key, api_key):
            raise AuthError("Invalid API key")
        return api_key

    async def generate_credential(self, user: Optional[str], ip_address: Optional[str] = None) -> str:
        if not isinstance(user, str) or not user.strip():
            raise ValidationError("Missing user")
        return await asyncio.to_thread(self.db.create_api_key, user.strip(), ip_address)

    async def register(self, api_key: Optional[str], local_port: Any) -> TunnelDescriptor:
        await self._require_api_key(api_key)
        local_port = parse_port(local_port, "localPort")

        tunnel_id = str(uuid.uuid4())
        public_port = self.allocator.allocate()
        tunnel = Tunnel(id=tunnel_id, local_port=local_port, public_port=public_port, api_key=api_key)

        try:
            await asyncio.to_thread(
                self.db.create_tunnel, tunnel.id, tunnel.local_port,
                tunnel.public_port, tunnel.api_key, tunnel.created_at
            )
        except PersistenceError:
            self.allocator.release(public_port)
            raise

        forwarder = self._new_forwarder(tunnel)
        try:
            await forwarder.start()
        except BindError as e:
            logger.error(f"     Tunnel {tunnel_id}: {e.message}, rolling back registration")
            await self._rollback(tunnel)
            raise

        # Only a tunnel with a live listener ever enters the registry
        try:
            self.registry.put(tunnel)
        except DuplicateIdError:
            await forwarder.stop(force=True)
            await self._rollback(tunnel)
            raise
        self._forwarders[tunnel_id] = forwarder

        logger.info(
            f"     Registered tunnel {tunnel_id}: public port {public_port} -> local port {local_port} "
            f"({self.registry.active_count()} active)"
        )
        return self._describe(tunnel)

    async def _rollback(self, tunnel: Tunnel):
        self.allocator.release(tunnel.public_port)
        try:
            await asyncio.to_thread(self.db.delete_tunnel, tunnel.id)
        except PersistenceError as e:
            logger.error(f"     Tunnel {tunnel.id}: failed to remove persisted record during rollback: {e}")

    async def stop(self, api_key: Optional[str], tunnel_id: Optional[str]) -> None:
        await self._require_api_key(api_key)
        if not tunnel_id:
            raise ValidationError("Missing tunnelId")
        if not isinstance(tunnel_id, str):
            raise ValidationError("tunnelId must be a string")

        tunnel = self.registry.get(tunnel_id)
        if tunnel.api_key != api_key:
            raise ForbiddenError("Invalid API key")
        if not tunnel.is_active:
            # another stop already claimed it
            raise NotFoundError("Tunnel not found")

        # Claimed without yielding, so a concurrent stop sees STOPPED
        tunnel.state = TunnelState.STOPPED
        forwarder = self._forwarders.pop(tunnel_id, None)
        if forwarder is not None:
            await forwarder.stop(force=self.config.SEVER_ON_STOP)
        self.registry.remove(tunnel_id)
        self.allocator.release(tunnel.public_port)

        await asyncio.to_thread(self.db.delete_tunnel, tunnel_id)
        logger.info(f"     Stopped tunnel {tunnel_id} ({self.registry.active_count()} active)")

    async def status(self, tunnel_id: Optional[str]) -> TunnelDescriptor:
        if not tunnel_id:
            raise ValidationError("Missing tunnelId")
        if not isinstance(tunnel_id, str):
            raise ValidationError("tunnelId must be a string")
        tunnel = self.registry.get(tunnel_id)
        if not tunnel.is_active:
            raise NotFoundError("Tunnel not found")
        return self._describe(tunnel)

    async def reconcile(self) -> Tuple[int, int]:
        """Bring persisted tunnels in line with what is actually forwarding.

        Persisted tunnels without a live listener are re-bound on their
        recorded public port when RESTORE_TUNNELS is set; the rest are
        deleted. Returns (restored, purged).
        """
        rows = await asyncio.to_thread(self.db.list_tunnels)
        restored = purged = 0

        for row in rows:
            if row["id"] in self.registry:
                continue
            if self.config.RESTORE_TUNNELS and await self._restore(row):
                restored += 1
                continue
            await asyncio.to_thread(self.db.delete_tunnel, row["id"])
            purged += 1

        if rows:
            logger.info(f"     Reconciled persisted tunnels: {restored} restored, {purged} purged")
        return restored, purged

    async def _restore(self, row: Dict) -> bool:
        tunnel_id = row["id"]
        try:
            self.allocator.reserve(row["public_port"])
        except (ValueError, ExhaustedRangeError) as e:
            logger.warning(f"     Cannot restore tunnel {tunnel_id}: {e}")
            return False

        try:
            created_at = datetime.fromisoformat(row["created_at"])
        except (TypeError, ValueError):
            created_at = datetime.now(timezone.utc)

        tunnel = Tunnel(
            id=tunnel_id, local_port=row["local_port"], public_port=row["public_port"],
            api_key=row["api_key"], created_at=created_at,
        )
        forwarder = self._new_forwarder(tunnel)
        try:
            await forwarder.start()
        except BindError as e:
            logger.warning(f"     Cannot restore tunnel {tunnel_id}: {e.message}")
            self.allocator.release(tunnel.public_port)
            return False

        self.registry.put(tunnel)
        self._forwarders[tunnel_id] = forwarder
        logger.info(f"     Restored tunnel {tunnel_id} on public port {tunnel.public_port}")
        return True

    async def shutdown(self):
        """Close every listener and relay; persisted records are kept for restore"""
        forwarders = list(self._forwarders.values())
        self._forwarders.clear()
        for forwarder in forwarders:
            await forwarder.stop(force=True)
        for tunnel in self.registry.list():
            tunnel.state = TunnelState.STOPPED
        if forwarders:
            logger.info(f"     Closed {len(forwarders)} tunnel listener(s)")
