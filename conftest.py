import asyncio
import socket

import pytest

from portbroker.server.config import Config
from portbroker.server.database import Database
from portbroker.server.errors import BindError


def free_port() -> int:
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def free_port_range(count: int, attempts: int = 50) -> int:
    """Find `count` consecutive ports that are currently bindable"""
    for _ in range(attempts):
        base = free_port()
        if base + count > 65535:
            continue
        sockets = []
        try:
            for port in range(base, base + count):
                s = socket.socket()
                sockets.append(s)
                s.bind(("127.0.0.1", port))
            return base
        except OSError:
            continue
        finally:
            for s in sockets:
                s.close()
    raise RuntimeError(f"Could not find {count} consecutive free ports")


def make_config(base_port: int = 9000, count: int = 10, **overrides):
    attrs = {
        "INITIAL_PUBLIC_PORT": base_port,
        "PUBLIC_PORT_COUNT": count,
        "BIND_HOST": "127.0.0.1",
        "TARGET_HOST": "127.0.0.1",
        "REGION": "test-region",
        "PUBLIC_HOST": "broker.example",
        "PUBLIC_URL": "https://broker.example",
        "ADDRESS_MODE": "port",
        "CONNECT_TIMEOUT": 2.0,
        "SEVER_ON_STOP": False,
        "RESTORE_TUNNELS": True,
        "LOOKUP_EXTERNAL_IP": False,
    }
    attrs.update(overrides)
    return type("TestConfig", (Config,), attrs)


class FakeForwarder:
    """Stands in for Forwarder where no sockets are wanted"""

    instances = []
    fail_ports = set()

    def __init__(self, tunnel_id, local_port, public_port, **kwargs):
        self.tunnel_id = tunnel_id
        self.local_port = local_port
        self.public_port = public_port
        self.kwargs = kwargs
        self.started = False
        self.stopped = False
        self.stop_calls = []
        FakeForwarder.instances.append(self)

    async def start(self):
        await asyncio.sleep(0)
        if self.public_port in FakeForwarder.fail_ports:
            raise BindError(self.public_port, "Address already in use")
        self.started = True
        return object()

    async def stop(self, force=False):
        self.stop_calls.append(force)
        await asyncio.sleep(0)
        self.stopped = True


@pytest.fixture
def fake_forwarder():
    FakeForwarder.instances = []
    FakeForwarder.fail_ports = set()
    yield FakeForwarder
    FakeForwarder.instances = []
    FakeForwarder.fail_ports = set()


@pytest.fixture
def db(tmp_path):
    return Database(str(tmp_path / "portbroker.db"))


async def start_echo_server():
    async def handle(reader, writer):
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]
