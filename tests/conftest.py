"""
Shared fixtures: a stub destination server and a running proxy.

Run tests:
----------
    pytest -v
"""

import asyncio
import gzip

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from core.config_manager import ClientSettings, ServerSettings, TunnelSettings
from core.proxy_manager import ProxyManager
from tests.helpers import BIG_BODY, GZIP_TEXT, HOPS


# ============================================================================
# Stub destination
# ============================================================================

async def hello(request):
    return web.Response(text="hi")


async def echo(request):
    body = await request.read()
    return web.json_response({
        "method": request.method,
        "path": request.path_qs,
        "body": body.decode('latin-1'),
        "headers": [[name, value] for name, value in request.headers.items()],
    })


async def hop(request):
    n = int(request.match_info['n'])
    request.app[HOPS].append(n)
    raise web.HTTPFound(f"/hop/{n + 1}")


async def see_other(request):
    await request.read()
    raise web.HTTPSeeOther("/echo")


async def temporary_redirect(request):
    await request.read()
    raise web.HTTPTemporaryRedirect("/echo")


async def multi(request):
    response = web.Response(text="multi")
    response.headers.add('Set-Cookie', 'a=1; Path=/')
    response.headers.add('Set-Cookie', 'b=2; Path=/')
    response.headers.add('X-Multi', 'first')
    response.headers.add('X-Multi', 'second')
    return response


async def gzipped(request):
    return web.Response(
        body=gzip.compress(GZIP_TEXT.encode('utf-8')),
        headers={'Content-Encoding': 'gzip', 'Content-Type': 'text/plain; charset=utf-8'},
    )


async def big(request):
    return web.Response(body=BIG_BODY, content_type='application/octet-stream')


async def streamed(request):
    response = web.StreamResponse()
    await response.prepare(request)
    for part in (b"one,", b"two,", b"three"):
        await response.write(part)
    await response.write_eof()
    return response


async def teapot(request):
    return web.Response(status=418, text="short and stout", headers={'X-Upstream': 'yes'})


async def slow(request):
    await asyncio.sleep(1.5)
    return web.Response(text="late")


def build_upstream_app() -> web.Application:
    app = web.Application()
    app[HOPS] = []
    app.router.add_get('/hello', hello)
    app.router.add_route('*', '/echo', echo)
    app.router.add_get('/hop/{n}', hop)
    app.router.add_post('/see-other', see_other)
    app.router.add_post('/temporary', temporary_redirect)
    app.router.add_get('/multi', multi)
    app.router.add_get('/gzip', gzipped)
    app.router.add_get('/big', big)
    app.router.add_get('/streamed', streamed)
    app.router.add_get('/teapot', teapot)
    app.router.add_get('/slow', slow)
    return app


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
async def upstream():
    """Stub destination server on 127.0.0.1"""
    server = TestServer(build_upstream_app())
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def server_settings():
    return ServerSettings(host='127.0.0.1', port=0, read_timeout=5.0, write_timeout=5.0)


@pytest.fixture
def client_settings():
    return ClientSettings(timeout=5.0)


@pytest.fixture
def tunnel_settings():
    return TunnelSettings(dial_timeout=2.0, handshake_write_timeout=2.0)


@pytest.fixture
async def proxy(server_settings, client_settings, tunnel_settings):
    """Running proxy bound to an ephemeral port"""
    manager = ProxyManager(
        server_settings=server_settings,
        client_settings=client_settings,
        tunnel_settings=tunnel_settings,
    )
    await manager.start()
    yield manager
    await manager.stop()
