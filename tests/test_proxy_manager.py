"""
Tests for core/proxy_manager.py and the main.py entry point

Test Coverage:
--------------
1. Server shell: bad requests, oversized heads, idle connections
2. Lifecycle: bind failure, stop
3. Entry point exit code when the port is busy
"""

import asyncio
import json
import logging
import socket
import sys

import pytest

import core.config_manager
import main
from core.config_manager import ConfigManager, ServerSettings
from core.proxy.headers import DEFAULT_OVERRIDE_HEADERS
from core.proxy_manager import ProxyManager
from tests.helpers import proxy_request, read_until_eof


@pytest.fixture
def busy_port():
    """A port held by another listening socket"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(('127.0.0.1', 0))
        s.listen()
        yield s.getsockname()[1]


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


# ============================================================================
# Server shell
# ============================================================================

@pytest.mark.asyncio
async def test_malformed_request_gets_bad_request(proxy):
    status, headers, body = await proxy_request(proxy.port, b"NOT A REQUEST LINE AT ALL\r\n\r\n")
    assert status == 400
    assert headers['Connection'] == 'close'
    assert body == b"Bad Request\n"


@pytest.mark.asyncio
async def test_unsupported_version(proxy):
    status, _, _ = await proxy_request(proxy.port, b"GET http://example.test/ HTTP/2.0\r\n\r\n")
    assert status == 505


@pytest.mark.asyncio
@pytest.mark.parametrize('server_settings', [
    ServerSettings(host='127.0.0.1', port=0, read_timeout=5.0, max_header_size=1024),
])
async def test_oversized_head(proxy):
    raw = b"GET http://example.test/ HTTP/1.1\r\nX-Big: " + b"a" * 1500 + b"\r\n\r\n"
    status, _, _ = await proxy_request(proxy.port, raw)
    assert status == 431


@pytest.mark.asyncio
@pytest.mark.parametrize('server_settings', [
    ServerSettings(host='127.0.0.1', port=0, read_timeout=5.0, max_body_size=16),
])
async def test_declared_body_over_limit(proxy):
    raw = b"POST http://example.test/ HTTP/1.1\r\nContent-Length: 17\r\n\r\n" + b"x" * 17
    status, _, _ = await proxy_request(proxy.port, raw)
    assert status == 413


@pytest.mark.asyncio
@pytest.mark.parametrize('server_settings', [
    ServerSettings(host='127.0.0.1', port=0, read_timeout=0.2),
])
async def test_idle_connection_closed(proxy):
    reader, writer = await asyncio.open_connection('127.0.0.1', proxy.port)
    try:
        assert await read_until_eof(reader, 5) == b""
    finally:
        writer.close()
        await writer.wait_closed()


@pytest.mark.asyncio
async def test_caller_closing_connection_is_quiet(proxy, caplog):
    reader, writer = await asyncio.open_connection('127.0.0.1', proxy.port)
    writer.close()
    await writer.wait_closed()
    await asyncio.sleep(0.1)
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


# ============================================================================
# Lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_bind_failure_raises(busy_port, client_settings, tunnel_settings, caplog):
    manager = ProxyManager(
        server_settings=ServerSettings(host='127.0.0.1', port=busy_port),
        client_settings=client_settings,
        tunnel_settings=tunnel_settings,
    )

    with pytest.raises(OSError):
        await manager.start()

    assert manager.is_running is False
    assert manager.last_error_details
    assert manager.client.session is None
    assert f"Cannot listen on 127.0.0.1:{busy_port}" in caplog.text


@pytest.mark.asyncio
async def test_start_and_stop(proxy):
    assert proxy.is_running
    assert proxy.port
    assert proxy.addresses[0][0] == '127.0.0.1'
    port = proxy.port

    await proxy.stop()

    assert not proxy.is_running
    assert proxy.client.session is None
    with pytest.raises(OSError):
        await asyncio.open_connection('127.0.0.1', port)


@pytest.mark.asyncio
async def test_run_cancelled(server_settings, client_settings, tunnel_settings):
    manager = ProxyManager(server_settings=server_settings, client_settings=client_settings,
                           tunnel_settings=tunnel_settings)
    task = asyncio.create_task(manager.run())
    for _ in range(50):
        if manager.is_running:
            break
        await asyncio.sleep(0.05)
    assert manager.is_running

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert not manager.is_running


def test_settings_taken_from_config(tmp_path):
    config_path = tmp_path / 'config.json'
    config_path.write_text(json.dumps({
        'server': {'port': 3128},
        'client': {'max_redirects': 4},
        'tunnel': {'buffer_size': 4096},
    }), encoding='utf-8')

    manager = ProxyManager(ConfigManager(config_path))

    assert manager.server_settings.port == 3128
    assert manager.client_settings.max_redirects == 4
    assert manager.tunnel_settings.buffer_size == 4096
    assert manager.overrides == DEFAULT_OVERRIDE_HEADERS


# ============================================================================
# Entry point
# ============================================================================

def test_parse_listen():
    assert main.parse_listen('127.0.0.1:3128') == ('127.0.0.1', 3128)
    assert main.parse_listen(':8080') == ('0.0.0.0', 8080)


@pytest.mark.parametrize('value', ['8080', 'host:port'])
def test_parse_listen_rejects(value):
    with pytest.raises(SystemExit):
        main.build_parser().parse_args(['--listen', value])


def test_main_exits_non_zero_when_port_busy(busy_port, tmp_path, monkeypatch, restore_logging):
    monkeypatch.setattr(core.config_manager, '_config_instance', None)
    monkeypatch.setattr(sys, 'excepthook', sys.excepthook)

    code = main.main([
        '--listen', f'127.0.0.1:{busy_port}',
        '--config', str(tmp_path / 'config.json'),
        '--no-log-file',
    ])

    assert code == 1
