"""ULID request identifiers.

ULIDs are 26-character, lexicographically sortable ids (Crockford Base32),
which keeps request ids in log output ordered by arrival time. Generated with
the ``python-ulid`` library.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Return a new ULID as a 26-character uppercase string."""
    return str(ULID())
