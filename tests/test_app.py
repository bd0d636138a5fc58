from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import aiohttp
import pytest
from conftest import CertPair

from lora_endpoint import app as app_module
from lora_endpoint.config import EndpointConfig, SockAddr
from lora_endpoint.exceptions import CredentialWatcherLostError
from lora_endpoint.rotation import CredentialWatcher
from lora_endpoint.state import SqliteMessageStore


def test_main_rejects_invalid_configuration(tmp_path: Path) -> None:
    assert app_module.main(["-c", str(tmp_path / "missing.json"), "-l", "host:port"]) == 2


@pytest.fixture
def exiting_watcher(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make the credential watcher exit right after it is spawned."""
    monkeypatch.setattr(
        CredentialWatcher,
        "_build_command",
        lambda self: [sys.executable, "-c", "raise SystemExit(1)"],
    )


@pytest.mark.asyncio
async def test_serve_fails_when_watcher_is_lost(
    tmp_path: Path,
    tls_files: tuple[Path, Path, CertPair],
    exiting_watcher: None,
) -> None:
    cert_path, key_path, _ = tls_files
    config = EndpointConfig(
        db=str(tmp_path / "state.db"),
        config=None,
        tls_cert=str(cert_path),
        tls_key=str(key_path),
        listen=SockAddr(port=0, address="127.0.0.1"),
    )

    with pytest.raises(CredentialWatcherLostError) as excinfo:
        await asyncio.wait_for(app_module.serve(config), 10.0)

    assert excinfo.value.returncode == 1


def test_main_exits_with_failure_when_watcher_is_lost(
    tmp_path: Path,
    tls_files: tuple[Path, Path, CertPair],
    exiting_watcher: None,
) -> None:
    cert_path, key_path, _ = tls_files
    argv = [
        "-c",
        str(tmp_path / "missing.json"),
        "-d",
        str(tmp_path / "state.db"),
        "-C",
        str(cert_path),
        "-k",
        str(key_path),
        "-l",
        "127.0.0.1:random",
    ]

    assert app_module.main(argv) == 1


@pytest.mark.asyncio
async def test_serve_accepts_messages_without_broker(tmp_path: Path) -> None:
    socket_path = tmp_path / "http.sock"
    db = tmp_path / "state.db"
    config = EndpointConfig(db=str(db), config=None, listen=str(socket_path))

    task = asyncio.create_task(app_module.serve(config))
    try:
        for _ in range(200):
            if socket_path.exists() or task.done():
                break
            await asyncio.sleep(0.01)
        assert socket_path.exists()

        connector = aiohttp.UnixConnector(path=str(socket_path))
        async with aiohttp.ClientSession(connector=connector) as session:
            body = {"id": "m1", "eui": "0004A30B001C0530", "payload": 1}
            async with session.post("http://localhost/messages", json=body) as resp:
                assert resp.status == 202
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    store = SqliteMessageStore(db)
    try:
        assert [m.id for m in store.get_messages()] == ["m1"]
    finally:
        store.close()
