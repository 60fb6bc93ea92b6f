from __future__ import annotations

import hashlib

import nyaya_core.hashing as hashing_module
from nyaya_core.hashing import (
    cache_key,
    content_hash,
    fallback_hash,
    files_hash,
    request_fingerprint,
)


def test_content_hash_is_sha256_hex() -> None:
    assert content_hash("") == (
        "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
    )
    assert content_hash("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )
    assert content_hash("न्याय") == hashlib.sha256("न्याय".encode("utf-8")).hexdigest()


def test_fallback_hash_matches_32_bit_rolling_hash() -> None:
    assert fallback_hash("") == "0"
    assert fallback_hash("a") == "61"
    assert fallback_hash("ab") == "c21"


def test_content_hash_degrades_when_digest_fails(monkeypatch, caplog) -> None:
    monkeypatch.setattr(hashing_module, "_degraded_logged", False)
    unencodable = "\ud800"

    first = content_hash(unencodable)
    second = content_hash(unencodable)

    assert first == second == "d800"
    degraded_logs = [r for r in caplog.records if "fallback hash" in r.getMessage()]
    assert len(degraded_logs) == 1


def test_cache_key_joins_parts_and_truncates_digest() -> None:
    expected = hashlib.sha256("doc-1|judge|abc".encode("utf-8")).hexdigest()[:16]

    assert cache_key("doc_analysis_", "doc-1", "judge", "abc") == f"doc_analysis_{expected}"
    assert cache_key("p_", "a", "b") != cache_key("p_", "a|b", "")


def test_files_hash_ignores_file_order() -> None:
    assert files_hash(["first", "second"]) == files_hash(["second", "first"])
    assert files_hash(["first"]) != files_hash(["first", "second"])


def test_request_fingerprint_is_key_order_insensitive() -> None:
    left = request_fingerprint({"prompt": "x", "role": "judge"})
    right = request_fingerprint({"role": "judge", "prompt": "x"})

    assert left == right
    assert left != request_fingerprint({"role": "lawyer", "prompt": "x"})
