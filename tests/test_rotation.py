from __future__ import annotations

import asyncio
import contextlib
import sys
from collections.abc import Callable
from pathlib import Path

import pytest
from conftest import CertPair

from lora_endpoint.credentials import ListenerCredentials
from lora_endpoint.exceptions import CredentialWatcherLostError, EndpointError
from lora_endpoint.models import RotationMessage
from lora_endpoint.rotation import CredentialWatcher
from lora_endpoint.watcher import FileWatch, watch_files

TlsFiles = tuple[Path, Path, CertPair]


class _RecordingCredentials(ListenerCredentials):
    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.messages: list[RotationMessage] = []
        self.results: list[bool] = []

    def apply(self, message: RotationMessage) -> bool:
        result = super().apply(message)
        self.messages.append(message)
        self.results.append(result)
        return result


async def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


def test_file_watch_reports_changes_and_missing_files(tmp_path: Path) -> None:
    path = tmp_path / "cert.pem"
    path.write_bytes(b"one")
    watch = FileWatch(str(path))

    first = watch.poll()
    assert first is not None and first.decode() == b"one"
    assert watch.poll() is None

    path.write_bytes(b"two")
    second = watch.poll()
    assert second is not None and second.decode() == b"two"

    path.unlink()
    missing = watch.poll()
    assert missing is not None and missing.data is None
    assert watch.poll() is None


@pytest.mark.asyncio
async def test_watch_files_reports_each_path_once_at_start(tmp_path: Path) -> None:
    path = tmp_path / "combined.pem"
    path.write_bytes(b"content")
    emitted: list[RotationMessage] = []

    task = asyncio.create_task(watch_files([str(path), str(path)], interval=0.01, emit=emitted.append))
    await asyncio.sleep(0.1)
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task

    assert emitted == [RotationMessage.from_content(str(path), b"content")]


def test_handle_line_ignores_malformed_messages(tls_files: TlsFiles) -> None:
    cert_path, key_path, _ = tls_files
    credentials = ListenerCredentials.from_files(str(cert_path), str(key_path))
    watcher = CredentialWatcher(credentials)

    assert watcher.handle_line(b"not json\n") is False
    assert watcher.handle_line(b'{"data": "AAAA"}\n') is False


@pytest.mark.asyncio
async def test_watcher_process_reports_rotated_files(
    tls_files: TlsFiles,
    cert_factory: Callable[[], CertPair],
) -> None:
    cert_path, key_path, (cert, _key) = tls_files
    credentials = _RecordingCredentials.from_files(str(cert_path), str(key_path))
    assert isinstance(credentials, _RecordingCredentials)
    watcher = CredentialWatcher(credentials, interval=0.05)
    await watcher.start()
    run_task = asyncio.create_task(watcher.run())
    try:
        # Current content is reported first and changes nothing.
        await _wait_for(lambda: len(credentials.messages) >= 2)
        assert credentials.results[:2] == [False, False]

        new_cert, new_key = cert_factory()
        key_path.write_bytes(new_key)
        cert_path.write_bytes(new_cert)

        await _wait_for(lambda: True in credentials.results)
        assert credentials.certificate == new_cert
        assert not run_task.done()
    finally:
        run_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await run_task
        await watcher.aclose()


@pytest.mark.asyncio
async def test_lost_watcher_is_fatal(tls_files: TlsFiles) -> None:
    cert_path, key_path, _ = tls_files
    credentials = ListenerCredentials.from_files(str(cert_path), str(key_path))
    watcher = CredentialWatcher(credentials, command=[sys.executable, "-c", "raise SystemExit(3)"])
    await watcher.start()

    with pytest.raises(CredentialWatcherLostError) as excinfo:
        await asyncio.wait_for(watcher.run(), 10.0)

    assert excinfo.value.returncode == 3
    await watcher.aclose()


@pytest.mark.asyncio
async def test_closing_the_channel_stops_the_watcher(tls_files: TlsFiles) -> None:
    cert_path, key_path, _ = tls_files
    credentials = ListenerCredentials.from_files(str(cert_path), str(key_path))
    watcher = CredentialWatcher(credentials, interval=0.05)
    await watcher.start()
    process = watcher._process  # type: ignore[attr-defined]
    assert process is not None

    await watcher.aclose(timeout=10.0)

    assert process.returncode is not None
    assert watcher.pid is None


@pytest.mark.asyncio
async def test_run_requires_start(tls_files: TlsFiles) -> None:
    cert_path, key_path, _ = tls_files
    watcher = CredentialWatcher(ListenerCredentials.from_files(str(cert_path), str(key_path)))

    with pytest.raises(EndpointError):
        await watcher.run()
