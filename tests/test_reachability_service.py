import asyncio
import socket

import pytest

from exclusion_sync.services import reachability_service as reach_module
from exclusion_sync.services.reachability_service import ReachabilityService


@pytest.mark.anyio
async def test_probe_succeeds_against_listening_port():
    accepted = []

    async def handle(reader, writer):
        accepted.append(True)
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        assert await ReachabilityService().probe("127.0.0.1", port, 1000) is True
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.anyio
async def test_probe_reports_refused_connection():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    result = await ReachabilityService().check("127.0.0.1", port, 1000)

    assert result.reachable is False
    assert result.reason_if_not == "connection refused"


@pytest.mark.anyio
async def test_probe_maps_name_resolution_failure_to_false():
    result = await ReachabilityService().check("host.does-not-exist.invalid", 5985, 1000)

    assert result.reachable is False
    assert result.reason_if_not


@pytest.mark.anyio
async def test_probe_times_out(monkeypatch):
    async def never_connects(host, port):
        await asyncio.sleep(10)

    monkeypatch.setattr(reach_module.asyncio, "open_connection", never_connects)

    result = await ReachabilityService().check("hv01.lab.local", 5985, 50)

    assert result.reachable is False
    assert result.reason_if_not == "timed out after 50 ms"


@pytest.mark.anyio
async def test_probe_without_address_is_unreachable():
    result = await ReachabilityService().check("", 5985, 1000)

    assert result.reachable is False
    assert result.reason_if_not == "no address"


@pytest.mark.anyio
async def test_probe_never_raises_on_os_errors(monkeypatch):
    async def broken(host, port):
        raise OSError(101, "Network is unreachable")

    monkeypatch.setattr(reach_module.asyncio, "open_connection", broken)

    assert await ReachabilityService().probe("10.0.0.1", 5985, 100) is False
