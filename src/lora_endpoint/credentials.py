"""Live TLS credentials of the HTTPS listener.

The listener's :class:`ssl.SSLContext` is created once and never replaced.
Rotated certificates and keys are loaded into that same context, which
affects only handshakes started afterwards: OpenSSL copies the credentials
into each connection when the connection is created, so established
connections keep what they negotiated with.

``load_cert_chain`` only accepts file names, while the process serving TLS
has usually dropped the privileges needed to read the real files. Received
content is therefore written to a private temporary directory for the
duration of the load.
"""

from __future__ import annotations

import binascii
import logging
import ssl
import tempfile
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from lora_endpoint.exceptions import CredentialError
from lora_endpoint.models.rotation import RotationMessage

_logger = logging.getLogger(__name__)


def validate_certificate(data: bytes, *, filename: str = "") -> x509.Certificate:
    """Return the leaf certificate contained in ``data``.

    Raises :class:`CredentialError` when no loadable PEM certificate is found.
    """
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError as exc:
        raise CredentialError(f"Invalid certificate: {exc}", filename=filename) from exc


def validate_private_key(data: bytes, *, filename: str = "") -> None:
    """Check that ``data`` holds a loadable, unencrypted PEM private key."""
    try:
        serialization.load_pem_private_key(data, password=None)
    except (TypeError, ValueError, UnsupportedAlgorithm) as exc:
        raise CredentialError(f"Invalid private key: {exc}", filename=filename) from exc


def create_server_context(cert_file: str, key_file: str | None = None) -> ssl.SSLContext:
    """Build the listener's server context from the credential files."""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    _logger.info("Loading TLS server certificate from '%s'", cert_file)
    _logger.info("Loading TLS private key from '%s'", key_file or cert_file)
    context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    return context


def _load_pair(context: ssl.SSLContext, cert: bytes, key: bytes) -> None:
    with tempfile.TemporaryDirectory(prefix="lora-endpoint-tls-") as tmp:
        cert_path = Path(tmp) / "cert.pem"
        key_path = Path(tmp) / "key.pem"
        cert_path.write_bytes(cert)
        key_path.write_bytes(key)
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))


@dataclass
class _Credential:
    path: str
    content: bytes


class ListenerCredentials:
    """Single writer of the listener's live certificate and key.

    Parameters
    ----------
    context : ssl.SSLContext
        The context the listener serves with. Mutated in place.
    cert_file, key_file : str
        Paths the watcher reports on. They may be the same path when the
        certificate and the key live in one file.
    cert, key : bytes
        Content currently loaded into ``context``.
    """

    def __init__(
        self,
        context: ssl.SSLContext,
        *,
        cert_file: str,
        key_file: str,
        cert: bytes,
        key: bytes,
        logger: logging.Logger | None = None,
    ) -> None:
        self._context = context
        self._cert = _Credential(cert_file, cert)
        self._key = _Credential(key_file, key)
        self._logger = logger or _logger

    @classmethod
    def from_files(cls, cert_file: str, key_file: str | None = None) -> ListenerCredentials:
        """Create the context and seed it from disk (before dropping privileges)."""
        key_path = key_file or cert_file
        context = create_server_context(cert_file, key_path)
        return cls(
            context,
            cert_file=cert_file,
            key_file=key_path,
            cert=Path(cert_file).read_bytes(),
            key=Path(key_path).read_bytes(),
        )

    @property
    def context(self) -> ssl.SSLContext:
        return self._context

    @property
    def cert_file(self) -> str:
        return self._cert.path

    @property
    def key_file(self) -> str:
        return self._key.path

    @property
    def certificate(self) -> bytes:
        """Latest accepted certificate content (not necessarily live yet)."""
        return self._cert.content

    def apply(self, message: RotationMessage) -> bool:
        """Apply a rotation message to the live context.

        Returns ``True`` when the live credentials changed. Every failure is
        logged and leaves the live credentials untouched.
        """
        if message.data is None:
            self._logger.debug("No usable content for '%s' yet, ignoring", message.filename)
            return False

        is_cert = message.filename == self._cert.path
        is_key = message.filename == self._key.path
        if not is_cert and not is_key:
            self._logger.warning("Ignoring credentials for unknown file '%s'", message.filename)
            return False

        self._logger.debug("Reloading TLS credentials from '%s'", message.filename)
        try:
            content = message.decode()
            assert content is not None  # noqa: S101
            if is_cert:
                validate_certificate(content, filename=message.filename)
            if is_key:
                validate_private_key(content, filename=message.filename)
        except (binascii.Error, CredentialError) as exc:
            self._logger.error("Failed to reload TLS credentials from '%s': %s", message.filename, exc)
            return False

        cert = content if is_cert else self._cert.content
        key = content if is_key else self._key.content
        if cert == self._cert.content and key == self._key.content:
            self._logger.debug("Credentials from '%s' unchanged", message.filename)
            return False

        # Latest content per kind wins, even when it cannot be paired yet.
        if is_cert:
            self._cert.content = cert
        if is_key:
            self._key.content = key

        try:
            # A failed load may leave a context half-updated, so try a scratch one first.
            _load_pair(ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER), cert, key)
        except (ssl.SSLError, OSError) as exc:
            self._logger.warning(
                "TLS credentials from '%s' do not form a usable pair yet, keeping current ones: %s",
                message.filename,
                exc,
            )
            return False

        try:
            _load_pair(self._context, cert, key)
        except (ssl.SSLError, OSError) as exc:
            self._logger.error("Failed to reload TLS credentials from '%s': %s", message.filename, exc)
            return False

        self._logger.info("TLS credentials reloaded from '%s'", message.filename)
        return True
