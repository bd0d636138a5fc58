"""HTTP ingestion API.

A deliberately small adapter: it validates a posted message and pushes it
into the delivery queue. Producers get no delivery confirmation, only an
acknowledgement that the message is durably queued (or was a duplicate).
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Mapping

from aiohttp import BasicAuth, hdrs, web
from pydantic import ValidationError

from lora_endpoint.delivery import DeliveryQueue
from lora_endpoint.exceptions import EndpointStoreError
from lora_endpoint.models.message import Message

_logger = logging.getLogger(__name__)

QUEUE_KEY = web.AppKey("queue", DeliveryQueue)
CREDENTIALS_KEY = web.AppKey("credentials", dict)

_REALM = 'Basic realm="lora-endpoint"'


def _authorized(request: web.Request) -> bool:
    credentials: Mapping[str, str] = request.app[CREDENTIALS_KEY]
    if not credentials:
        return True
    header = request.headers.get(hdrs.AUTHORIZATION)
    if not header:
        return False
    try:
        auth = BasicAuth.decode(header)
    except ValueError:
        return False
    expected = credentials.get(auth.login)
    if expected is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), auth.password.encode("utf-8"))


async def post_message(request: web.Request) -> web.Response:
    if not _authorized(request):
        return web.json_response(
            {"error": "unauthorized"},
            status=401,
            headers={hdrs.WWW_AUTHENTICATE: _REALM},
        )

    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"error": "request body is not JSON"}, status=400)

    try:
        message = Message.model_validate(body)
    except ValidationError as exc:
        return web.json_response(
            {"error": "invalid message", "details": exc.errors(include_url=False, include_context=False)},
            status=400,
        )

    try:
        request.app[QUEUE_KEY].push(message)
    except EndpointStoreError:
        _logger.error("Could not queue message id=%s", message.id, exc_info=True)
        return web.json_response({"error": "message store unavailable"}, status=503)

    return web.json_response({"id": message.id}, status=202)


def create_app(queue: DeliveryQueue, *, credentials: Mapping[str, str] | None = None) -> web.Application:
    """Build the aiohttp application serving the ingestion API."""
    app = web.Application()
    app[QUEUE_KEY] = queue
    app[CREDENTIALS_KEY] = dict(credentials or {})
    app.router.add_post("/messages", post_message)
    return app
