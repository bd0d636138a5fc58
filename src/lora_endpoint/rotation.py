"""Parent side of the credential rotation channel.

Spawns the watcher process (see :mod:`lora_endpoint.watcher`) and applies
every message it reports to the listener's live credentials. Losing the
watcher is fatal: :meth:`CredentialWatcher.run` raises
:class:`CredentialWatcherLostError` as soon as the channel closes.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import NoReturn

from pydantic import ValidationError

import lora_endpoint
from lora_endpoint._constants import WATCH_INTERVAL_SECONDS
from lora_endpoint._redact import redact_for_log
from lora_endpoint.credentials import ListenerCredentials
from lora_endpoint.exceptions import CredentialWatcherLostError, EndpointError
from lora_endpoint.models.rotation import RotationMessage

_logger = logging.getLogger(__name__)

# One channel line carries a whole base64-encoded PEM file.
_CHANNEL_LIMIT = 1024 * 1024


def _child_env() -> dict[str, str]:
    """Environment letting the child import this very package from ``/``."""
    env = dict(os.environ)
    package_root = str(Path(lora_endpoint.__file__).resolve().parent.parent)
    existing = env.get("PYTHONPATH")
    env["PYTHONPATH"] = package_root if not existing else os.pathsep.join([package_root, existing])
    return env


class CredentialWatcher:
    """Owns the watcher process and the channel it reports on.

    Parameters
    ----------
    credentials : ListenerCredentials
        Live credentials of the HTTPS listener.
    interval : float
        Polling interval handed to the watcher process.
    command : sequence of str or None
        Override for the watcher command line. Defaults to running
        :mod:`lora_endpoint.watcher` with the current interpreter.
    """

    def __init__(
        self,
        credentials: ListenerCredentials,
        *,
        interval: float = WATCH_INTERVAL_SECONDS,
        command: Sequence[str] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._credentials = credentials
        self._interval = interval
        self._command = list(command) if command is not None else None
        self._logger = logger or _logger
        self._process: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def _build_command(self) -> list[str]:
        if self._command is not None:
            return self._command
        return [
            sys.executable,
            "-m",
            "lora_endpoint.watcher",
            "--interval",
            str(self._interval),
            self._credentials.cert_file,
            self._credentials.key_file,
        ]

    async def start(self) -> None:
        """Spawn the watcher. Must happen before privileges are dropped."""
        if self._process is not None:
            raise EndpointError("Credential watcher already started")
        command = self._build_command()
        self._process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            cwd="/",
            env=_child_env(),
            limit=_CHANNEL_LIMIT,
        )
        self._logger.info("Credential watcher started pid=%s", self._process.pid)

    async def run(self) -> NoReturn:
        """Apply reported credentials until the channel closes, then raise."""
        process = self._process
        if process is None or process.stdout is None:
            raise EndpointError("Credential watcher not started")

        while True:
            line = await process.stdout.readline()
            if not line:
                break
            self.handle_line(line)

        returncode = await process.wait()
        raise CredentialWatcherLostError(
            f"Credential watcher exited (status {returncode}); TLS credentials can no longer be refreshed",
            returncode=returncode,
        )

    def handle_line(self, line: bytes) -> bool:
        """Parse one channel line and apply it. Returns whether credentials changed."""
        try:
            message = RotationMessage.model_validate_json(line)
        except ValidationError as exc:
            self._logger.error("Malformed message from credential watcher: %s", exc)
            return False
        self._logger.debug("Credential update %s", redact_for_log(message.model_dump()))
        return self._credentials.apply(message)

    async def aclose(self, timeout: float = 5.0) -> None:
        """Close the channel and make sure the watcher is gone."""
        process = self._process
        self._process = None
        if process is None or process.returncode is not None:
            return
        if process.stdin is not None:
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout)
        except TimeoutError:
            self._logger.warning("Credential watcher did not exit, terminating pid=%s", process.pid)
            try:
                process.kill()
            except PermissionError:
                # The watcher kept the pre-drop identity; closing stdin is all we can do.
                self._logger.warning("Not allowed to signal credential watcher pid=%s", process.pid)
                return
            except ProcessLookupError:
                pass
            await process.wait()
