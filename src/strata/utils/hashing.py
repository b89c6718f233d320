"""Deterministic SHA-256 helpers used for migration checksums."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

__all__ = ["sha256_parts"]


def sha256_parts(parts: Iterable[str]) -> str:
    """Digest of ``parts`` where each part is framed as ``<byte length>:<utf-8 bytes>``.

    Framing keeps part boundaries significant: ``("ab", "c")`` and ``("a", "bc")``
    hash differently.
    """

    digest = hashlib.sha256()
    for part in parts:
        encoded = part.encode("utf-8")
        digest.update(b"%d:" % len(encoded))
        digest.update(encoded)
    return digest.hexdigest()
