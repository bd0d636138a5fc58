"""Deduplicating, durable delivery queue.

Messages pushed into the queue are written to the store before ``push``
returns and are removed only after the sink confirms them. Delivery is
at-least-once and eventually successful, provided a sink is installed and
eventually accepts the message.

Drains never overlap: a single worker task runs them one after another.
Drain requests that arrive while a drain is in flight are coalesced into
one follow-up drain that starts once the current one has settled.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from lora_endpoint._constants import RETRY_DELAY_SECONDS
from lora_endpoint.models.message import Message
from lora_endpoint.state.store import MessageStore

_logger = logging.getLogger(__name__)

Sink = Callable[[Message], Awaitable[None]]
"""Delivery function. Returns on success, raises on failure."""


class DeliveryQueue:
    """Deliver pushed messages to a late-bound sink, retrying forever on failure.

    Parameters
    ----------
    store : MessageStore
        Durable seen-set and pending queue. Owned by this queue from now on.
    retry_delay : float
        Seconds to wait after a failed drain before starting another one.
        There is no retry cap and no backoff.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        retry_delay: float = RETRY_DELAY_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._store = store
        self._retry_delay = retry_delay
        self._logger = logger or _logger
        self._sink: Sink | None = None
        self._wakeup: asyncio.Event | None = None
        self._worker: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def has_sink(self) -> bool:
        return self._sink is not None

    def pending_count(self) -> int:
        """Number of messages waiting for delivery."""
        return len(self._store.get_messages())

    def push(self, message: Message) -> None:
        """Accept ``message`` for delivery unless its id was seen before.

        The seen-mark and the enqueue are one store transaction, so two pushes
        of the same id can never both enqueue. Store failures propagate.
        """
        if not self._store.add(message):
            self._logger.debug("Ignoring duplicate message id=%s", message.id)
            return
        self._logger.debug("Queued message id=%s eui=%s", message.id, message.eui)
        self._request_drain()

    def set_sink(self, sink: Sink) -> None:
        """Install the delivery function and start draining pending messages."""
        self._sink = sink
        self._request_drain()

    async def aclose(self) -> None:
        """Stop the drain worker, including a pending retry wait."""
        self._closed = True
        worker = self._worker
        self._worker = None
        if worker is None:
            return
        worker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await worker

    # ------------------------------------------------------------------
    # Drain scheduling
    # ------------------------------------------------------------------

    def _request_drain(self) -> None:
        if self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Messages are durable; the next request made from the loop picks them up.
            self._logger.debug("No running event loop, drain deferred")
            return

        if self._worker is None or self._worker.done():
            self._wakeup = asyncio.Event()
            self._worker = loop.create_task(self._run(), name="lora-endpoint-drain")
        assert self._wakeup is not None  # noqa: S101
        self._wakeup.set()

    async def _run(self) -> None:
        wakeup = self._wakeup
        assert wakeup is not None  # noqa: S101
        while True:
            await wakeup.wait()
            wakeup.clear()
            try:
                succeeded = await self._drain()
            except Exception:
                self._logger.error("Drain aborted by store failure", exc_info=True)
                succeeded = False
            if succeeded:
                continue
            # Requests made during the failed drain wait out the delay too.
            self._logger.info("Retrying delivery in %.1f s", self._retry_delay)
            await asyncio.sleep(self._retry_delay)
            wakeup.set()

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def _drain(self) -> bool:
        """Deliver a snapshot of the pending queue.

        Returns ``True`` when every message in the snapshot was delivered.
        Only settles after every delivery attempt has settled.
        """
        sink = self._sink
        if sink is None:
            return True

        messages = self._store.get_messages()
        if not messages:
            return True

        self._logger.debug("Draining %d pending message(s)", len(messages))
        results = await asyncio.gather(
            *(self._deliver(sink, message) for message in messages),
            return_exceptions=True,
        )

        failures = [result for result in results if isinstance(result, BaseException)]
        if not failures:
            return True

        self._logger.warning(
            "Delivery failed for %d of %d message(s): %s",
            len(failures),
            len(messages),
            failures[0],
        )
        return False

    async def _deliver(self, sink: Sink, message: Message) -> None:
        await sink(message)
        self._store.dequeue(message)
        self._logger.debug("Delivered message id=%s", message.id)
