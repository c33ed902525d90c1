"""Session and tab identifier generation."""

from __future__ import annotations

import re
import secrets
import time

from ..constants import BASE36_ALPHABET, RANDOM_SUFFIX_LENGTH

SESSION_ID_PATTERN = re.compile(r"^\d+-[a-z0-9]{6}$")


def random_suffix(length: int = RANDOM_SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(BASE36_ALPHABET) for _ in range(length))


def now_millis() -> int:
    return time.time_ns() // 1_000_000


def new_session_id() -> str:
    """``{unixMillis}-{random6}``; the random suffix separates same-millisecond ids."""
    return f"{now_millis()}-{random_suffix()}"


def new_tab_id() -> str:
    return f"tab-{now_millis()}-{random_suffix()}"


def session_timestamp(session_id: str) -> int:
    """Millisecond timestamp prefix of a session id."""
    return int(session_id.split("-", 1)[0])


def is_session_id(value: str) -> bool:
    return bool(SESSION_ID_PATTERN.match(value))
