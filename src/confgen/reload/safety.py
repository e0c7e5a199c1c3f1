"""Safety rails for swapping config files.

Keeps the live config file in a state the downstream server can always
read:
- Durations are validated before the loop ever starts
- Replacement files inherit the live file's ownership and permissions
- Changes are detected on content, and described as a unified diff
"""

import difflib
import hashlib
import logging
import os
from pathlib import Path

from confgen.errors import InvalidDurationError

logger = logging.getLogger(__name__)


def validate_durations(sleep_duration: float, cooldown_duration: float) -> None:
    """Check the loop timing parameters.

    Raises:
        InvalidDurationError: If either is negative, or cooldown exceeds sleep.
    """
    if sleep_duration < 0:
        raise InvalidDurationError(sleep_duration, cooldown_duration, "sleep_duration is negative")
    if cooldown_duration < 0:
        raise InvalidDurationError(
            sleep_duration, cooldown_duration, "cooldown_duration is negative"
        )
    if cooldown_duration > sleep_duration:
        raise InvalidDurationError(
            sleep_duration, cooldown_duration, "cooldown_duration exceeds sleep_duration"
        )


def content_hash(data: bytes) -> str:
    """Compute the MD5 hex digest used to identify config contents in logs."""
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


def config_diff(old: bytes, new: bytes, old_label: str, new_label: str, context: int = 3) -> str:
    """Render a unified diff between two config contents.

    Returns:
        The diff text; empty when the contents are identical.
    """
    if old == new:
        return ""

    old_lines = old.decode("utf-8", errors="replace").splitlines(keepends=True)
    new_lines = new.decode("utf-8", errors="replace").splitlines(keepends=True)
    diff = "".join(
        difflib.unified_diff(old_lines, new_lines, fromfile=old_label, tofile=new_label, n=context)
    )
    # Byte-level differences that decode identically still count as a change
    return diff or f"Binary contents of {old_label} and {new_label} differ\n"


def match_permissions(source: Path, target: Path) -> None:
    """Give target the same ownership and permission bits as source.

    Changing ownership needs privileges the process may not have; that
    case is logged and otherwise ignored.
    """
    stat = source.stat()
    os.chmod(target, stat.st_mode & 0o7777)
    try:
        os.chown(target, stat.st_uid, stat.st_gid)
    except PermissionError:
        logger.debug(f"Cannot chown {target} to {stat.st_uid}:{stat.st_gid}; leaving ownership")
