"""Binding the aiohttp application to a TCP port or a UNIX socket."""

from __future__ import annotations

import contextlib
import logging
import os
import ssl
from typing import Any

from aiohttp import web

from lora_endpoint.config import Listen, SockAddr

_logger = logging.getLogger(__name__)


def addr_to_string(addr: Any) -> str:
    """Format an address reported by :attr:`aiohttp.web.AppRunner.addresses`."""
    if isinstance(addr, str):
        return f"unix:{addr}"
    host, port = addr[0], addr[1]
    if ":" in host:
        return f"tcp:[{host}]:{port}"
    return f"tcp:{host}:{port}"


async def start_listening(
    runner: web.AppRunner,
    listen: Listen,
    *,
    ssl_context: ssl.SSLContext | None = None,
) -> web.BaseSite:
    """Start serving ``runner`` on ``listen``.

    A stale UNIX socket file is removed before binding, and the new socket
    is made world-writable so that clients keep access after privileges
    are dropped.
    """
    site: web.BaseSite
    if isinstance(listen, SockAddr):
        site = web.TCPSite(runner, host=listen.address, port=listen.port, ssl_context=ssl_context)
        await site.start()
    else:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(listen)
        site = web.UnixSite(runner, listen, ssl_context=ssl_context)
        await site.start()
        os.chmod(listen, 0o666)

    scheme = "HTTPS" if ssl_context is not None else "HTTP"
    for addr in runner.addresses:
        _logger.info("%s server is listening on %s", scheme, addr_to_string(addr))
    return site
