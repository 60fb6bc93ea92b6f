"""Content fingerprints used as cache keys and request-coordination keys.

``content_hash`` is a SHA-256 hex digest. When the digest cannot be computed the
module degrades to ``fallback_hash``, a 32-bit rolling hash with much weaker
collision resistance; callers that dedupe by hash must tolerate that mode.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable
from typing import Any

from nyaya_core.errors import HashComputationFailure

logger = logging.getLogger(__name__)

PART_SEPARATOR = "|"
FILE_SEPARATOR = "\n---FILE_SEPARATOR---\n"
CACHE_KEY_HASH_LENGTH = 16

_degraded_logged = False


def content_hash(content: str) -> str:
    try:
        return _sha256_hex(content)
    except HashComputationFailure as exc:
        _log_degraded_once(exc)
        return fallback_hash(content)


def fallback_hash(content: str) -> str:
    value = 0
    for char in content:
        value = ((value << 5) - value + ord(char)) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 0x100000000
    return format(abs(value), "x")


def cache_key(prefix: str, *parts: str) -> str:
    digest = content_hash(PART_SEPARATOR.join(parts))
    return f"{prefix}{digest[:CACHE_KEY_HASH_LENGTH]}"


def files_hash(contents: Iterable[str]) -> str:
    # Sorted so the same set of files hashes identically in any order.
    return content_hash(FILE_SEPARATOR.join(sorted(contents)))


def request_fingerprint(params: Any) -> str:
    try:
        canonical = json.dumps(params, sort_keys=True, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        canonical = repr(params)
    return content_hash(canonical)


def _sha256_hex(content: str) -> str:
    try:
        return hashlib.sha256(content.encode("utf-8")).hexdigest()
    except (ValueError, TypeError, AttributeError, UnicodeError) as exc:
        raise HashComputationFailure(str(exc)) from exc


def _log_degraded_once(exc: Exception) -> None:
    global _degraded_logged
    if _degraded_logged:
        return
    _degraded_logged = True
    logger.warning("sha256 unavailable, using 32-bit fallback hash: %s", exc)
