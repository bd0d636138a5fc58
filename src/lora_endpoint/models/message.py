"""Device message model."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Message(BaseModel):
    """A device-originated message accepted for delivery.

    Parameters
    ----------
    id : str
        Opaque unique token used for deduplication.
    eui : str
        Identifier of the originating device.
    payload : Any
        Arbitrary JSON-serialisable structured value.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., description="Unique message id")
    eui: str = Field(..., description="Device EUI")
    payload: Any = None

    @field_validator("id", "eui")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        # Ids are opaque: blank ones are rejected, others are kept verbatim.
        if not value.strip():
            raise ValueError("must be non-empty")
        return value
