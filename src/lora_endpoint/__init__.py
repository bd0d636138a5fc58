"""lora-endpoint - HTTP(S) to MQTT bridge for device messages."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("lora-endpoint")
except PackageNotFoundError:
    __version__ = "0+local"
from lora_endpoint.config import EndpointConfig, SockAddr
from lora_endpoint.credentials import ListenerCredentials
from lora_endpoint.delivery import DeliveryQueue, Sink
from lora_endpoint.exceptions import (
    CredentialError,
    CredentialWatcherLostError,
    EndpointConfigError,
    EndpointError,
    EndpointSinkError,
    EndpointStoreError,
)
from lora_endpoint.models import Message, RotationMessage
from lora_endpoint.rotation import CredentialWatcher
from lora_endpoint.state import MessageStore, SqliteMessageStore

__all__ = [
    "__version__",
    "CredentialError",
    "CredentialWatcher",
    "CredentialWatcherLostError",
    "DeliveryQueue",
    "EndpointConfig",
    "EndpointConfigError",
    "EndpointError",
    "EndpointSinkError",
    "EndpointStoreError",
    "ListenerCredentials",
    "Message",
    "MessageStore",
    "RotationMessage",
    "Sink",
    "SockAddr",
    "SqliteMessageStore",
]
