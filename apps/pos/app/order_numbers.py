from __future__ import annotations

import itertools
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import ORDER_NUMBER_MAX_ATTEMPTS
from .errors import NonUniqueIdentifier

PREFIX = "PED"
SUFFIX_SPACE = 10_000

# Each call starts on a fresh slot so numbers issued by this process do not
# compete for the same suffix within one second.
_offsets = itertools.count()


def generate_order_number(
    exists: Callable[[str], bool],
    now: Optional[datetime] = None,
    max_attempts: int = ORDER_NUMBER_MAX_ATTEMPTS,
) -> str:
    """
    Human-friendly order number:
      PED-YYYYMMDD-NNNN

    NNNN is derived from the epoch seconds plus a disambiguator. On a
    collision (``exists`` returns True) the disambiguator is incremented;
    after ``max_attempts`` collisions we fall back to
      PED-YYYYMMDD-HHMMSS-RRRRRR
    with a random suffix. If even that is taken, NonUniqueIdentifier is
    raised instead of looping.
    """
    ts = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    day = ts.strftime("%Y%m%d")
    epoch = int(ts.timestamp())
    offset = next(_offsets)
    for n in range(max_attempts):
        candidate = f"{PREFIX}-{day}-{(epoch + offset + n) % SUFFIX_SPACE:04d}"
        if not exists(candidate):
            _advance(n)
            return candidate
    _advance(max_attempts)
    fallback = f"{PREFIX}-{ts.strftime('%Y%m%d-%H%M%S')}-{secrets.randbelow(1_000_000):06d}"
    if exists(fallback):
        raise NonUniqueIdentifier(f"order number space exhausted ({fallback})")
    return fallback


def _advance(steps: int) -> None:
    # Skip the slots probed by this call so the next call starts past them.
    for _ in range(steps):
        next(_offsets)
