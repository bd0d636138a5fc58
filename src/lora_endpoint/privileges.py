"""User/group resolution and privilege drop."""

from __future__ import annotations

import grp
import logging
import os
import pwd
from typing import Any

_logger = logging.getLogger(__name__)


def _as_id(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text) if text.isdigit() else None


def resolve_user(value: Any) -> int | None:
    """Return the uid for a numeric id or a user name.

    Raises :class:`LookupError` for unknown names.
    """
    if value is None:
        return None
    uid = _as_id(value)
    if uid is not None:
        return uid
    try:
        return pwd.getpwnam(str(value)).pw_uid
    except KeyError as exc:
        raise LookupError(f"Unknown user '{value}'") from exc


def resolve_group(value: Any) -> int | None:
    """Return the gid for a numeric id or a group name.

    Raises :class:`LookupError` for unknown names.
    """
    if value is None:
        return None
    gid = _as_id(value)
    if gid is not None:
        return gid
    try:
        return grp.getgrnam(str(value)).gr_gid
    except KeyError as exc:
        raise LookupError(f"Unknown group '{value}'") from exc


def drop_privileges(uid: int | None = None, gid: int | None = None) -> None:
    """Switch the process to ``uid``/``gid``.

    The group goes first: once the user changes the process may no longer
    be allowed to change its groups. Must only be called after the listener
    is bound and the credential watcher is running.
    """
    _logger.info("Changing working directory to /")
    os.chdir("/")

    if gid is not None:
        _logger.info("Switching to gid %s", gid)
        os.setgroups([gid])
        os.setgid(gid)
        os.setegid(gid)

    if uid is not None:
        _logger.info("Switching to uid %s", uid)
        os.setuid(uid)
        os.seteuid(uid)
