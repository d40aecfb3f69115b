"""
Public-port forwarder.

One Forwarder owns the listening socket of one tunnel. Every inbound
connection gets its own task that opens a connection to the tunnel's local
target and relays bytes in both directions until both sides are done.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Set

from .errors import BindError, ConnectError, TransientIOError

logger = logging.getLogger("portbroker-server")

# Read size for each relay direction
RELAY_CHUNK_SIZE = 64 * 1024

DEFAULT_CONNECT_TIMEOUT = 10.0


class ForwarderState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    CLOSED = "closed"


@dataclass
class ForwarderStats:
    accepted: int = 0
    active: int = 0
    failed_upstream: int = 0
    bytes_in: int = 0    # public peer -> local target
    bytes_out: int = 0   # local target -> public peer


class Forwarder:
    def __init__(self, tunnel_id: str, local_port: int, public_port: int,
                 target_host: str = "localhost", bind_host: str = "0.0.0.0",
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        self.tunnel_id = tunnel_id
        self.local_port = local_port
        self.public_port = public_port
        self.target_host = target_host
        self.bind_host = bind_host
        self.connect_timeout = connect_timeout
        self.state = ForwarderState.IDLE
        self.stats = ForwarderStats()
        self._server: Optional[asyncio.AbstractServer] = None
        self._relays: Set[asyncio.Task] = set()

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually bound, which differs from public_port when that is 0"""
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> asyncio.AbstractServer:
        """Bind the public port and start accepting connections.

        Raises BindError if the port cannot be bound; the forwarder then stays
        IDLE and owns no OS resources.
        """
        if self.state != ForwarderState.IDLE:
            raise RuntimeError(f"Forwarder for tunnel {self.tunnel_id} is {self.state.value}, cannot start")

        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.bind_host, self.public_port
            )
        except OSError as e:
            raise BindError(self.public_port, e.strerror or str(e)) from e

        self.state = ForwarderState.LISTENING
        logger.info(
            f"     Tunnel {self.tunnel_id} is forwarding traffic from public port "
            f"{self.bound_port} to {self.target_host}:{self.local_port}"
        )
        return self._server

    async def stop(self, force: bool = False) -> None:
        """Stop accepting connections.

        In-flight relays drain on their own unless force is set, in which
        case they are cancelled. Calling stop twice is a no-op.
        """
        if self.state == ForwarderState.CLOSED:
            return
        if self.state == ForwarderState.IDLE:
            self.state = ForwarderState.CLOSED
            return

        self.state = ForwarderState.CLOSED
        self._server.close()

        if force:
            relays = list(self._relays)
            for task in relays:
                task.cancel()
            if relays:
                await asyncio.gather(*relays, return_exceptions=True)
            await self._server.wait_closed()

        logger.info(
            f"     Tunnel {self.tunnel_id} stopped listening on port {self.public_port} "
            f"(accepted={self.stats.accepted}, draining={self.stats.active}, "
            f"failed_upstream={self.stats.failed_upstream}, "
            f"bytes_in={self.stats.bytes_in}, bytes_out={self.stats.bytes_out})"
        )

    @property
    def active_connections(self) -> int:
        return len(self._relays)

    async def _handle_connection(self, client_reader: asyncio.StreamReader,
                                 client_writer: asyncio.StreamWriter):
        task = asyncio.current_task()
        self._relays.add(task)
        self.stats.accepted += 1
        self.stats.active += 1
        peer = client_writer.get_extra_info("peername")
        try:
            try:
                upstream_reader, upstream_writer = await self._connect_upstream()
            except ConnectError as e:
                self.stats.failed_upstream += 1
                logger.warning(f"     Tunnel {self.tunnel_id}: {e.message}; closing connection from {peer}")
                client_writer.close()
                try:
                    await client_writer.wait_closed()
                except (ConnectionError, OSError):
                    pass
                return

            logger.debug(f"     Tunnel {self.tunnel_id}: relaying {peer} <-> {self.target_host}:{self.local_port}")
            await self._relay(client_reader, client_writer, upstream_reader, upstream_writer, peer)
        finally:
            # no-op unless cancelled before the relay took over the socket
            client_writer.close()
            self.stats.active -= 1
            self._relays.discard(task)

    async def _connect_upstream(self):
        try:
            return await asyncio.wait_for(
                asyncio.open_connection(self.target_host, self.local_port),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError as e:
            raise ConnectError(
                f"Timed out connecting to {self.target_host}:{self.local_port}"
            ) from e
        except OSError as e:
            raise ConnectError(
                f"Failed to connect to {self.target_host}:{self.local_port}: {e.strerror or e}"
            ) from e

    async def _relay(self, client_reader, client_writer, upstream_reader, upstream_writer, peer):
        inbound = asyncio.ensure_future(
            self._pipe(client_reader, upstream_writer, "bytes_in")
        )
        outbound = asyncio.ensure_future(
            self._pipe(upstream_reader, client_writer, "bytes_out")
        )
        failed = False
        try:
            pending = {inbound, outbound}
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    error = task.exception()
                    if error is None:
                        continue
                    if failed:
                        logger.debug(f"     Tunnel {self.tunnel_id}: {peer} other direction ended with: {error}")
                        continue
                    failed = True
                    logger.warning(f"     Tunnel {self.tunnel_id}: connection from {peer} failed: {error}")
                    if pending:
                        # A broken direction ends the whole connection. If the
                        # other one already finished, the close below flushes it.
                        client_writer.transport.abort()
                        upstream_writer.transport.abort()
        except asyncio.CancelledError:
            inbound.cancel()
            outbound.cancel()
            await asyncio.gather(inbound, outbound, return_exceptions=True)
            raise
        finally:
            for writer in (client_writer, upstream_writer):
                writer.close()
            for writer in (client_writer, upstream_writer):
                try:
                    await writer.wait_closed()
                except (ConnectionError, OSError):
                    pass

    async def _pipe(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, counter: str):
        """Copy one direction until its source ends, then half-close the sink"""
        try:
            while True:
                data = await reader.read(RELAY_CHUNK_SIZE)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
                setattr(self.stats, counter, getattr(self.stats, counter) + len(data))
            if not writer.is_closing() and writer.can_write_eof():
                writer.write_eof()
        except (ConnectionError, OSError) as e:
            raise TransientIOError(str(e) or e.__class__.__name__) from e
