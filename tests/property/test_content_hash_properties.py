"""
Property-based tests for content hashing.

**Feature: secret-dedup, Property 1: Content Hash Determinism**
"""

import hashlib

from hypothesis import given, settings
from hypothesis import strategies as st

from secretscan.core.hashing import content_hash


@given(value=st.binary(max_size=512))
@settings(max_examples=200)
def test_content_hash_is_deterministic_sha512(value: bytes):
    """Hashing twice yields the same 128 hex characters, equal to SHA-512."""
    first = content_hash(value)
    second = content_hash(bytes(value))

    assert first == second
    assert len(first) == 128
    assert first == first.lower()
    assert first == hashlib.sha512(value).hexdigest()


@given(a=st.binary(max_size=64), b=st.binary(max_size=64))
@settings(max_examples=200)
def test_distinct_values_have_distinct_hashes(a: bytes, b: bytes):
    """Different values never collide in practice."""
    if a != b:
        assert content_hash(a) != content_hash(b)


def test_empty_value_hash():
    assert content_hash(b"") == hashlib.sha512(b"").hexdigest()
