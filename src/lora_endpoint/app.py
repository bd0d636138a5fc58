"""Process entry point: wires the components together in startup order.

Order matters:

1. the store and the delivery queue,
2. the MQTT sink (installed into the queue once connected),
3. the TLS context and the credential watcher,
4. the listener,
5. the privilege drop, strictly after the listener is bound and the
   watcher is running.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys
from collections.abc import Sequence

from aiohttp import web

from lora_endpoint._mqtt import MqttSink, parse_broker_url
from lora_endpoint.config import EndpointConfig
from lora_endpoint.credentials import ListenerCredentials
from lora_endpoint.delivery import DeliveryQueue
from lora_endpoint.exceptions import CredentialWatcherLostError, EndpointError
from lora_endpoint.ingest import create_app
from lora_endpoint.listener import start_listening
from lora_endpoint.privileges import drop_privileges
from lora_endpoint.rotation import CredentialWatcher
from lora_endpoint.state.store import SqliteMessageStore

_logger = logging.getLogger(__name__)

_DEV_ACCESS_LOG_FORMAT = '%r %s %Tfs %b'
_ACCESS_LOG_FORMAT = '%a %t "%r" %s %b "%{Referer}i" "%{User-Agent}i"'


async def _wait_until_stopped(watcher: CredentialWatcher | None) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    handled: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            continue
        handled.append(signum)

    tasks: set[asyncio.Task[None]] = {asyncio.create_task(stop.wait())}
    if watcher is not None:
        tasks.add(asyncio.create_task(watcher.run()))

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for signum in handled:
            loop.remove_signal_handler(signum)
        for task in tasks:
            task.cancel()
    for task in pending:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    for task in done:
        task.result()
    _logger.info("Shutting down")


async def serve(config: EndpointConfig) -> None:
    """Run the endpoint until a stop signal or a fatal error."""
    store = SqliteMessageStore(config.db)
    queue = DeliveryQueue(store, retry_delay=config.retry_delay)
    sink: MqttSink | None = None
    watcher: CredentialWatcher | None = None
    runner: web.AppRunner | None = None

    try:
        pending = queue.pending_count()
        if pending:
            _logger.info("%d message(s) pending from a previous run", pending)

        if config.mqtt_broker:
            broker = parse_broker_url(config.mqtt_broker)
            _logger.info("Connecting to the MQTT broker at %s:%s", broker.host, broker.port)
            sink = MqttSink(broker)
            await sink.connect()
            queue.set_sink(sink)
        else:
            _logger.warning("No MQTT broker configured, messages will only be stored")

        app = create_app(queue, credentials=config.credentials)

        credentials: ListenerCredentials | None = None
        if config.tls_enabled:
            assert config.tls_cert is not None  # noqa: S101
            credentials = ListenerCredentials.from_files(config.tls_cert, config.key_file)
            # Spawned now: after the privilege drop it could no longer read the files.
            watcher = CredentialWatcher(credentials, interval=config.watch_interval)
            await watcher.start()

        runner = web.AppRunner(
            app,
            access_log_format=_DEV_ACCESS_LOG_FORMAT if config.dev_mode else _ACCESS_LOG_FORMAT,
        )
        await runner.setup()
        assert config.listen is not None  # noqa: S101
        await start_listening(
            runner,
            config.listen,
            ssl_context=credentials.context if credentials is not None else None,
        )

        if config.user is not None or config.group is not None:
            drop_privileges(config.user, config.group)

        _logger.info("Initialization complete")
        await _wait_until_stopped(watcher)
    finally:
        if watcher is not None:
            await watcher.aclose()
        if runner is not None:
            await runner.cleanup()
        await queue.aclose()
        if sink is not None:
            await sink.aclose()
        store.close()


def main(argv: Sequence[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    try:
        config = EndpointConfig.load(argv)
    except EndpointError as exc:
        _logger.error("Invalid configuration: %s", exc)
        return 2

    if config.dev_mode:
        logging.getLogger().setLevel(logging.DEBUG)
    _logger.info("Starting in %s mode", "development" if config.dev_mode else "production")

    try:
        asyncio.run(serve(config))
    except CredentialWatcherLostError as exc:
        _logger.critical("%s", exc)
        return 1
    except (EndpointError, OSError) as exc:
        _logger.critical("Fatal error: %s", exc, exc_info=config.dev_mode)
        return 1
    return 0
