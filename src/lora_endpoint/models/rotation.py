"""Credential rotation message exchanged with the watcher process."""

from __future__ import annotations

import base64

from pydantic import BaseModel, ConfigDict


class RotationMessage(BaseModel):
    """Current content of one watched credential file.

    ``data`` carries the full file content as base64 text, or ``None`` when
    the watcher could not read the file. ``None`` is never a deletion signal.
    """

    model_config = ConfigDict(frozen=True)

    filename: str
    data: str | None = None

    @classmethod
    def from_content(cls, filename: str, content: bytes | None) -> RotationMessage:
        if content is None:
            return cls(filename=filename, data=None)
        return cls(filename=filename, data=base64.b64encode(content).decode("ascii"))

    def decode(self) -> bytes | None:
        """Return the decoded file content.

        Raises :class:`binascii.Error` for invalid base64 text.
        """
        if self.data is None:
            return None
        return base64.b64decode(self.data, validate=True)
