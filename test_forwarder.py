#!/usr/bin/env python3
"""Relay tests against real sockets on 127.0.0.1."""

import asyncio
import os
import socket
import struct

import pytest

from conftest import free_port, start_echo_server
from portbroker.server.errors import BindError
from portbroker.server.forwarder import Forwarder, ForwarderState


def make_forwarder(local_port, public_port=0, **kwargs):
    return Forwarder("tunnel-1", local_port, public_port,
                     target_host="127.0.0.1", bind_host="127.0.0.1", **kwargs)


async def roundtrip(port, payload: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)

    async def send():
        writer.write(payload)
        await writer.drain()
        writer.write_eof()

    sender = asyncio.ensure_future(send())
    received = await asyncio.wait_for(reader.read(-1), timeout=10)
    await sender
    writer.close()
    return received


def test_relay_echoes_bytes_unmodified():
    async def main():
        echo, echo_port = await start_echo_server()
        forwarder = make_forwarder(echo_port)
        await forwarder.start()
        try:
            payload = bytes(range(256)) * 4
            assert await roundtrip(forwarder.bound_port, payload) == payload
        finally:
            await forwarder.stop(force=True)
            echo.close()
        assert forwarder.stats.accepted == 1
        assert forwarder.stats.bytes_in == len(payload)
        assert forwarder.stats.bytes_out == len(payload)

    asyncio.run(main())


def test_relay_zero_length_and_multi_megabyte_payloads():
    async def main():
        echo, echo_port = await start_echo_server()
        forwarder = make_forwarder(echo_port)
        await forwarder.start()
        try:
            assert await roundtrip(forwarder.bound_port, b"") == b""
            big = os.urandom(3 * 1024 * 1024)
            assert await roundtrip(forwarder.bound_port, big) == big
        finally:
            await forwarder.stop(force=True)
            echo.close()

    asyncio.run(main())


def test_relay_carries_data_from_local_service_to_peer():
    async def main():
        greeting = b"220 local service ready\r\n"

        async def handle(reader, writer):
            writer.write(greeting)
            await writer.drain()
            writer.close()

        local = await asyncio.start_server(handle, "127.0.0.1", 0)
        forwarder = make_forwarder(local.sockets[0].getsockname()[1])
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            assert await asyncio.wait_for(reader.read(-1), timeout=5) == greeting
            writer.close()
        finally:
            await forwarder.stop(force=True)
            local.close()

    asyncio.run(main())


def test_half_close_lets_the_other_direction_finish():
    async def main():
        # Replies only after the request side has been closed
        async def handle(reader, writer):
            request = await reader.read(-1)
            await asyncio.sleep(0.05)
            writer.write(request[::-1])
            await writer.drain()
            writer.close()

        local = await asyncio.start_server(handle, "127.0.0.1", 0)
        forwarder = make_forwarder(local.sockets[0].getsockname()[1])
        await forwarder.start()
        try:
            assert await roundtrip(forwarder.bound_port, b"abcdef") == b"fedcba"
        finally:
            await forwarder.stop(force=True)
            local.close()

    asyncio.run(main())


def test_unreachable_local_target_closes_connection_but_keeps_tunnel():
    async def main():
        local_port = free_port()
        forwarder = make_forwarder(local_port)
        await forwarder.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            try:
                data = await asyncio.wait_for(reader.read(-1), timeout=5)
            except ConnectionResetError:
                data = b""
            assert data == b""
            writer.close()

            assert forwarder.state == ForwarderState.LISTENING
            assert forwarder.stats.failed_upstream == 1

            # once the local service comes up the same tunnel works
            echo, _ = await start_echo_server_on(local_port)
            try:
                assert await roundtrip(forwarder.bound_port, b"hello") == b"hello"
            finally:
                echo.close()
        finally:
            await forwarder.stop(force=True)

    asyncio.run(main())


async def start_echo_server_on(port):
    async def handle(reader, writer):
        writer.write(await reader.read(-1))
        await writer.drain()
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", port)
    return server, port


def test_concurrent_connections_are_independent():
    async def main():
        echo, echo_port = await start_echo_server()
        forwarder = make_forwarder(echo_port)
        await forwarder.start()
        try:
            payloads = [os.urandom(10_000 + i) for i in range(10)]
            results = await asyncio.gather(*(roundtrip(forwarder.bound_port, p) for p in payloads))
            assert results == payloads
            assert forwarder.stats.accepted == 10
        finally:
            await forwarder.stop(force=True)
            echo.close()

    asyncio.run(main())


def test_start_reports_bind_error():
    async def main():
        with socket.socket() as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen()
            port = busy.getsockname()[1]

            forwarder = make_forwarder(8080, public_port=port)
            with pytest.raises(BindError) as exc_info:
                await forwarder.start()
            assert exc_info.value.port == port
            assert forwarder.state == ForwarderState.IDLE
            assert forwarder.bound_port is None

    asyncio.run(main())


def test_stop_closes_listener_and_is_idempotent():
    async def main():
        echo, echo_port = await start_echo_server()
        forwarder = make_forwarder(echo_port)
        await forwarder.start()
        port = forwarder.bound_port

        await forwarder.stop()
        await forwarder.stop()
        assert forwarder.state == ForwarderState.CLOSED

        with pytest.raises(OSError):
            await asyncio.open_connection("127.0.0.1", port)

        with pytest.raises(RuntimeError):
            await forwarder.start()
        echo.close()

    asyncio.run(main())


def test_stop_lets_in_flight_relays_drain():
    async def main():
        echo, echo_port = await start_echo_server()
        forwarder = make_forwarder(echo_port)
        await forwarder.start()

        reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
        writer.write(b"before")
        assert await asyncio.wait_for(reader.readexactly(6), timeout=5) == b"before"

        await forwarder.stop()

        writer.write(b"after")
        assert await asyncio.wait_for(reader.readexactly(5), timeout=5) == b"after"
        writer.write_eof()
        assert await asyncio.wait_for(reader.read(-1), timeout=5) == b""
        writer.close()
        echo.close()

    asyncio.run(main())


def test_forced_stop_severs_in_flight_relays():
    async def main():
        echo, echo_port = await start_echo_server()
        forwarder = make_forwarder(echo_port)
        await forwarder.start()

        reader, writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
        writer.write(b"ping")
        assert await asyncio.wait_for(reader.readexactly(4), timeout=5) == b"ping"
        assert forwarder.active_connections == 1

        await forwarder.stop(force=True)
        assert forwarder.active_connections == 0
        try:
            data = await asyncio.wait_for(reader.read(-1), timeout=5)
        except ConnectionResetError:
            data = b""
        assert data == b""
        writer.close()
        echo.close()

    asyncio.run(main())


def test_reset_connection_does_not_affect_other_relays(caplog):
    async def main():
        # Echoes, but resets the connection when asked to
        async def handle(reader, writer):
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                if b"reset" in data:
                    sock = writer.get_extra_info("socket")
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
                    writer.transport.abort()
                    return
                writer.write(data)
                await writer.drain()
            writer.close()

        local = await asyncio.start_server(handle, "127.0.0.1", 0)
        forwarder = make_forwarder(local.sockets[0].getsockname()[1])
        await forwarder.start()
        try:
            healthy_reader, healthy_writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            healthy_writer.write(b"one")
            assert await asyncio.wait_for(healthy_reader.readexactly(3), timeout=5) == b"one"

            broken_reader, broken_writer = await asyncio.open_connection("127.0.0.1", forwarder.bound_port)
            broken_writer.write(b"reset")
            try:
                data = await asyncio.wait_for(broken_reader.read(-1), timeout=5)
            except ConnectionResetError:
                data = b""
            assert data == b""
            broken_writer.close()

            # the healthy relay keeps working
            healthy_writer.write(b"two")
            assert await asyncio.wait_for(healthy_reader.readexactly(3), timeout=5) == b"two"
            healthy_writer.close()

            assert forwarder.state == ForwarderState.LISTENING
            assert await roundtrip(forwarder.bound_port, b"three") == b"three"
            assert forwarder.stats.accepted == 3
        finally:
            await forwarder.stop(force=True)
            local.close()

    with caplog.at_level("WARNING", logger="portbroker-server"):
        asyncio.run(main())
    assert "failed" in caplog.text


class StubTransport:
    def __init__(self):
        self.aborted = False

    def abort(self):
        self.aborted = True


class StubWriter:
    def __init__(self):
        self.transport = StubTransport()
        self.data = b""
        self.eof = False
        self.closed = False

    def write(self, data):
        self.data += data

    async def drain(self):
        pass

    def is_closing(self):
        return self.closed or self.transport.aborted

    def can_write_eof(self):
        return True

    def write_eof(self):
        self.eof = True

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


class StubReader:
    def __init__(self, chunks, delay=0.0, error=None):
        self.chunks = list(chunks)
        self.delay = delay
        self.error = error

    async def read(self, n):
        await asyncio.sleep(self.delay)
        if self.chunks:
            return self.chunks.pop(0)
        if self.error:
            raise self.error
        return b""


def test_failure_after_other_direction_finished_closes_gracefully():
    async def main():
        forwarder = make_forwarder(8080)
        client_writer, upstream_writer = StubWriter(), StubWriter()
        # local -> peer finishes first, then the peer side breaks
        upstream_reader = StubReader([b"reply"])
        client_reader = StubReader([], delay=0.05, error=ConnectionResetError("reset by peer"))

        await forwarder._relay(client_reader, client_writer, upstream_reader, upstream_writer, "peer")

        assert client_writer.data == b"reply"
        assert client_writer.eof
        assert not client_writer.transport.aborted
        assert not upstream_writer.transport.aborted
        assert client_writer.closed and upstream_writer.closed

    asyncio.run(main())


def test_failure_while_other_direction_runs_aborts_both():
    async def main():
        forwarder = make_forwarder(8080)
        client_writer, upstream_writer = StubWriter(), StubWriter()
        upstream_reader = StubReader([], delay=0.2)
        client_reader = StubReader([], error=ConnectionResetError("reset by peer"))

        await forwarder._relay(client_reader, client_writer, upstream_reader, upstream_writer, "peer")

        assert client_writer.transport.aborted
        assert upstream_writer.transport.aborted

    asyncio.run(main())
