"""Credential watcher process.

Run as ``python -m lora_endpoint.watcher CERT [KEY]`` by the main process
before it drops privileges, so that it keeps the identity needed to read the
TLS files. Every watched file is reported once at startup and again whenever
its content changes, as one JSON :class:`RotationMessage` per line on stdout.

The process exits when its stdin reaches end-of-file, which happens when the
parent closes the channel or exits.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys
from collections.abc import Callable, Sequence
from pathlib import Path

from lora_endpoint._constants import WATCH_INTERVAL_SECONDS
from lora_endpoint.models.rotation import RotationMessage

_logger = logging.getLogger("lora_endpoint.watcher")

_UNSET = object()


def read_credential(path: str) -> bytes | None:
    """Return the file content, or ``None`` when it cannot be read right now."""
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        _logger.debug("Cannot read '%s': %s", path, exc)
        return None


class FileWatch:
    """Tracks the last content reported for one path."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._last: object = _UNSET

    def poll(self) -> RotationMessage | None:
        """Return a message when the content differs from the last report."""
        content = read_credential(self.path)
        if content == self._last:
            return None
        self._last = content
        return RotationMessage.from_content(self.path, content)


def _write_line(message: RotationMessage) -> None:
    sys.stdout.write(message.model_dump_json() + "\n")
    sys.stdout.flush()


async def watch_files(
    paths: Sequence[str],
    *,
    interval: float,
    emit: Callable[[RotationMessage], None] = _write_line,
) -> None:
    """Poll ``paths`` forever, emitting a message on every change."""
    watches = [FileWatch(path) for path in dict.fromkeys(paths)]
    while True:
        for watch in watches:
            message = watch.poll()
            if message is None:
                continue
            _logger.debug("Reporting '%s' (%s)", watch.path, "missing" if message.data is None else "content")
            emit(message)
        await asyncio.sleep(interval)


async def _wait_for_parent_exit() -> None:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    while await reader.read(4096):
        pass


async def run(paths: Sequence[str], interval: float) -> None:
    watch_task = asyncio.create_task(watch_files(paths, interval=interval))
    parent_task = asyncio.create_task(_wait_for_parent_exit())
    done, pending = await asyncio.wait({watch_task, parent_task}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    for task in done:
        # Re-raise a failure of the watch loop (e.g. a broken stdout pipe).
        task.result()


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="python -m lora_endpoint.watcher",
        description="Report TLS credential file content to the parent process.",
    )
    parser.add_argument("cert", help="Certificate file.")
    parser.add_argument("key", nargs="?", help="Private key file (defaults to the certificate file).")
    parser.add_argument(
        "--interval",
        type=float,
        default=WATCH_INTERVAL_SECONDS,
        help="Seconds between two reads of each file.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logs.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s[%(process)d] %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    paths = [args.cert, args.key or args.cert]
    _logger.debug("Watching %s every %.2f s", ", ".join(dict.fromkeys(paths)), args.interval)
    try:
        asyncio.run(run(paths, args.interval))
    except BrokenPipeError:
        _logger.debug("Parent closed the channel")
        # Keep the interpreter from failing again while flushing stdout at exit.
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
