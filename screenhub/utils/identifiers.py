"""
Identifier helpers for versions, backups and alerts.
"""

import secrets
import string

from .clock import Clock, system_clock

_ALPHABET = string.ascii_lowercase + string.digits


def random_token(length: int = 5) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def time_based_id(prefix: str, clock: Clock = system_clock, length: int = 5) -> str:
    """``<prefix><epoch-ms>_<random>``, roughly ordered by creation time."""
    return f"{prefix}{clock.epoch_ms()}_{random_token(length)}"
