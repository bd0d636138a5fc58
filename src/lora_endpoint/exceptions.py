"""Custom exception hierarchy for lora-endpoint."""

from __future__ import annotations


class EndpointError(Exception):
    """Base exception for all lora-endpoint errors."""


class EndpointConfigError(EndpointError):
    """Invalid or missing configuration."""


class EndpointStoreError(EndpointError):
    """Persistent store failure.

    Not retried by the delivery queue; it propagates out of ``push`` so the
    ingestion path can report a hard failure to the producer.
    """


class EndpointSinkError(EndpointError):
    """Delivery to the downstream broker failed."""

    def __init__(self, message: str, *, topic: str = "") -> None:
        self.topic = topic
        super().__init__(message)


class CredentialError(EndpointError):
    """Certificate or private key content could not be used."""

    def __init__(self, message: str, *, filename: str = "") -> None:
        self.filename = filename
        super().__init__(message)


class CredentialWatcherLostError(EndpointError):
    """The credential watcher process went away.

    TLS credentials can no longer be refreshed once this happens, so the
    application treats it as fatal.
    """

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        self.returncode = returncode
        super().__init__(message)
