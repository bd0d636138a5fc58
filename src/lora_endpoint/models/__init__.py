"""Data models for lora-endpoint."""

from lora_endpoint.models.message import Message
from lora_endpoint.models.rotation import RotationMessage

__all__ = [
    "Message",
    "RotationMessage",
]
