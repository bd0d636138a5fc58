"""Endpoint configuration.

The configuration is assembled once at startup from, in increasing order of
precedence, built-in defaults, a JSON configuration file, ``LORA_*``
environment variables, and the command line. The resulting
:class:`EndpointConfig` is passed explicitly to every component.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from lora_endpoint._constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULT_DB_PATH,
    DEFAULT_HTTP_PORT,
    DEFAULT_HTTPS_PORT,
    ENV_PREFIX,
    RETRY_DELAY_SECONDS,
    WATCH_INTERVAL_SECONDS,
)
from lora_endpoint._redact import redact_for_log
from lora_endpoint.exceptions import EndpointConfigError
from lora_endpoint.privileges import resolve_group, resolve_user

_logger = logging.getLogger(__name__)

_OPTION_NAMES: tuple[str, ...] = (
    "mqtt_broker",
    "config",
    "tls_cert",
    "db",
    "group",
    "tls_key",
    "listen",
    "credentials",
    "user",
    "dev_mode",
    "retry_delay",
    "watch_interval",
)


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def check_int(value: Any, minimum: int | None = None, maximum: int | None = None) -> int:
    """Parse an integer and enforce an inclusive range."""
    if isinstance(value, bool):
        raise ValueError(f"'{value}' is not an integer")
    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip()
        if not text.lstrip("+-").isdigit():
            raise ValueError(f"'{value}' is not an integer")
        number = int(text)
    if minimum is not None and number < minimum:
        raise ValueError(f"{number} is smaller than {minimum}")
    if maximum is not None and number > maximum:
        raise ValueError(f"{number} is greater than {maximum}")
    return number


@dataclasses.dataclass(frozen=True)
class SockAddr:
    """TCP listening address. ``address=None`` binds every interface."""

    port: int
    address: str | None = None


Listen = SockAddr | str
"""A :class:`SockAddr` or the path of a UNIX domain socket."""


def parse_listen(value: Any) -> Listen:
    """Parse a listen specification.

    Accepted forms: ``/path/to/socket``, ``[::1]:8443``, ``host:8443``,
    ``8443`` and ``random`` (an ephemeral port), plus ``{"port": ...,
    "address": ...}`` objects from the configuration file.
    """
    if isinstance(value, SockAddr):
        return value
    if isinstance(value, Mapping):
        if "port" not in value:
            raise EndpointConfigError("Missing 'port' in 'listen' parameter value")
        return SockAddr(port=_check_port(value["port"]), address=value.get("address") or None)
    if isinstance(value, int) and not isinstance(value, bool):
        return SockAddr(port=_check_port(value))
    if not isinstance(value, str):
        raise EndpointConfigError(f"Invalid 'listen' parameter value '{value}'")

    if value.startswith("/"):
        return value

    address: str | None = None
    rest = value
    if value.startswith("["):
        end = value.find("]")
        if end == -1:
            raise EndpointConfigError("Missing closing ] in listen argument value")
        address = value[1:end]
        rest = value[end + 1 :]

    host, sep, port = rest.rpartition(":")
    if not sep:
        port = rest
    elif address is None:
        address = host or None

    return SockAddr(port=_check_port(port), address=address)


def _check_port(value: Any) -> int:
    if isinstance(value, str) and value.strip().lower() == "random":
        return 0
    try:
        return check_int(value, 0, 65535)
    except ValueError as exc:
        raise EndpointConfigError(f"Invalid port number: {exc}") from exc


def parse_credentials(value: Any) -> dict[str, str] | None:
    """Parse the HTTP credentials mapping (username → password)."""
    if value is None:
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as exc:
            raise EndpointConfigError("Invalid 'credentials' parameter format (JSON object expected)") from exc
    if not isinstance(value, Mapping):
        raise EndpointConfigError("Invalid 'credentials' parameter format (JSON object expected)")
    return {str(user): str(password) for user, password in value.items()}


@dataclasses.dataclass(frozen=True)
class EndpointConfig:
    """Endpoint configuration.

    Parameters
    ----------
    db : str
        SQLite database holding the seen ids and the pending messages.
    config : str or None
        JSON configuration file the values were loaded from.
    mqtt_broker : str or None
        Broker URL (``mqtt://host:1883``, ``mqtts://host``). Without it
        messages accumulate in the store.
    tls_cert : str or None
        PEM certificate file. Enables HTTPS and the credential watcher.
    tls_key : str or None
        PEM private key file. Defaults to ``tls_cert``.
    listen : SockAddr or str
        Listening address or UNIX socket path. Defaults to port 443 with
        TLS and 80 without.
    user, group : int or None
        Identity to switch to once listening.
    credentials : dict or None
        HTTP Basic credentials (username → password) for the ingestion API.
    dev_mode : bool
        Verbose logging.
    retry_delay : float
        Seconds between a failed drain and the next attempt.
    watch_interval : float
        Seconds between two reads of the credential files.
    """

    db: str = DEFAULT_DB_PATH
    config: str | None = DEFAULT_CONFIG_PATH
    mqtt_broker: str | None = None
    tls_cert: str | None = None
    tls_key: str | None = None
    listen: Listen | None = None
    user: int | None = None
    group: int | None = None
    credentials: Mapping[str, str] | None = None
    dev_mode: bool = False
    retry_delay: float = RETRY_DELAY_SECONDS
    watch_interval: float = WATCH_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if self.listen is None:
            port = DEFAULT_HTTPS_PORT if self.tls_enabled else DEFAULT_HTTP_PORT
            object.__setattr__(self, "listen", SockAddr(port=port))
        if self.retry_delay < 0:
            raise EndpointConfigError("'retry_delay' must not be negative")
        if self.watch_interval <= 0:
            raise EndpointConfigError("'watch_interval' must be positive")

    @property
    def key_file(self) -> str | None:
        return self.tls_key or self.tls_cert

    @property
    def tls_enabled(self) -> bool:
        return bool(self.tls_cert)

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> EndpointConfig:
        """Validate raw option values and build a configuration."""
        kwargs: dict[str, Any] = {}
        for name in _OPTION_NAMES:
            if name not in values:
                continue
            value = values[name]
            if value is None and name in ("mqtt_broker", "db", "listen"):
                raise EndpointConfigError(f"Missing '{name}' parameter value")
            kwargs[name] = value

        for name in ("tls_cert", "tls_key", "mqtt_broker", "db", "config"):
            value = kwargs.get(name)
            if value is not None and not isinstance(value, str):
                raise EndpointConfigError(f"Invalid '{name}' parameter value '{value}'")

        # The watcher runs with cwd "/", so it needs absolute paths.
        for name in ("tls_cert", "tls_key"):
            if kwargs.get(name):
                kwargs[name] = os.path.abspath(kwargs[name])

        if "listen" in kwargs:
            kwargs["listen"] = parse_listen(kwargs["listen"])
        if "credentials" in kwargs:
            kwargs["credentials"] = parse_credentials(kwargs["credentials"])
        try:
            if "user" in kwargs:
                kwargs["user"] = resolve_user(kwargs["user"])
            if "group" in kwargs:
                kwargs["group"] = resolve_group(kwargs["group"])
        except LookupError as exc:
            raise EndpointConfigError(str(exc)) from exc
        if "dev_mode" in kwargs and not isinstance(kwargs["dev_mode"], bool):
            kwargs["dev_mode"] = _env_bool(str(kwargs["dev_mode"]), False)
        for name in ("retry_delay", "watch_interval"):
            if name in kwargs:
                try:
                    kwargs[name] = float(kwargs[name])
                except (TypeError, ValueError) as exc:
                    raise EndpointConfigError(f"Invalid '{name}' parameter value '{kwargs[name]}'") from exc

        return cls(**kwargs)

    @classmethod
    def load(
        cls,
        argv: Sequence[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> EndpointConfig:
        """Assemble the configuration from every source."""
        cmdline = parse_cmdline(argv)
        env = env_values(os.environ if environ is None else environ)

        config_file = cmdline.get("config") or env.get("config") or DEFAULT_CONFIG_PATH
        saved = load_config_file(config_file)

        values: dict[str, Any] = {"config": config_file}
        values.update({k: v for k, v in saved.items() if k in _OPTION_NAMES})
        values.update(env)
        values.update(cmdline)
        _logger.debug("Effective options %s", redact_for_log(values))
        return cls.from_mapping(values)


def env_values(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``LORA_<OPTION>`` variables, plus ``LORA_ENV=development``."""
    values: dict[str, Any] = {}
    for name in _OPTION_NAMES:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            values[name] = value
    if "dev_mode" not in values and f"{ENV_PREFIX}ENV" in environ:
        values["dev_mode"] = environ[f"{ENV_PREFIX}ENV"].strip().lower() == "development"
    return values


def load_config_file(filename: str) -> dict[str, Any]:
    """Load a JSON configuration file. A missing file yields ``{}``."""
    _logger.debug("Loading configuration file '%s'", filename)
    try:
        text = Path(filename).read_text(encoding="utf-8")
    except FileNotFoundError:
        _logger.debug("Configuration file '%s' does not exist, skipping", filename)
        return {}
    except OSError as exc:
        raise EndpointConfigError(f"Cannot read configuration file '{filename}': {exc}") from exc

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise EndpointConfigError(f"Configuration file '{filename}' is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise EndpointConfigError(f"Configuration file '{filename}' must contain a JSON object")
    _logger.debug("Configuration file '%s' loaded", filename)
    return data


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lora-endpoint",
        description="Forward device messages received over HTTP(S) to an MQTT broker.",
        argument_default=argparse.SUPPRESS,
    )
    parser.add_argument("-b", "--mqtt-broker", dest="mqtt_broker", help="MQTT broker URL.")
    parser.add_argument("-c", "--config", help="JSON configuration file.")
    parser.add_argument("-C", "--tls-cert", dest="tls_cert", help="TLS certificate (PEM).")
    parser.add_argument("-d", "--db", help="State database file.")
    parser.add_argument("-g", "--group", help="Group name or id to switch to.")
    parser.add_argument("-k", "--tls-key", dest="tls_key", help="TLS private key (PEM).")
    parser.add_argument("-l", "--listen", help="host:port, [v6]:port, port, 'random' or a UNIX socket path.")
    parser.add_argument("-r", "--credentials", help="JSON object of HTTP Basic username/password pairs.")
    parser.add_argument("-u", "--user", help="User name or id to switch to.")
    parser.add_argument("--dev", dest="dev_mode", action="store_true", help="Development mode (debug logs).")
    parser.add_argument("--retry-delay", dest="retry_delay", type=float, help="Seconds between delivery retries.")
    parser.add_argument(
        "--watch-interval",
        dest="watch_interval",
        type=float,
        help="Seconds between credential file checks.",
    )
    return parser


def parse_cmdline(argv: Sequence[str] | None = None) -> dict[str, Any]:
    """Return only the options actually given on the command line."""
    return vars(_build_parser().parse_args(argv))
