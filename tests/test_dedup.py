"""Tests for content-hash duplicate suppression."""

from datetime import datetime, timedelta, timezone

from scheduler.dedup import DuplicateGuard

T0 = datetime(2025, 10, 1, 12, 0, tzinfo=timezone.utc)


def test_hash_is_sha256_hex():
    assert DuplicateGuard.hash("abc") == (
        "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
    )
    assert DuplicateGuard.hash(b"abc") == DuplicateGuard.hash("abc")


def test_identical_content_is_duplicate():
    guard = DuplicateGuard()
    guard.record("t1", guard.hash("weekly lesson plan"), T0)
    assert guard.is_duplicate("t1", guard.hash("weekly lesson plan"), T0)


def test_single_byte_difference_is_not_duplicate():
    guard = DuplicateGuard()
    guard.record("t1", guard.hash("weekly lesson plan"), T0)
    assert not guard.is_duplicate("t1", guard.hash("weekly lesson plaN"), T0)


def test_entries_expire_after_retention():
    guard = DuplicateGuard(retention=timedelta(hours=24))
    digest = guard.hash("hello")
    guard.record("t1", digest, T0)
    assert guard.is_duplicate("t1", digest, T0 + timedelta(hours=23))
    assert not guard.is_duplicate("t1", digest, T0 + timedelta(hours=24))
    assert guard.size("t1") == 0


def test_set_cleared_wholesale_over_ceiling():
    guard = DuplicateGuard(max_entries=3)
    for i in range(3):
        guard.record("t1", guard.hash(f"msg {i}"), T0)
    assert guard.size("t1") == 3

    guard.record("t1", guard.hash("msg 3"), T0)
    assert guard.size("t1") == 0
    assert not guard.is_duplicate("t1", guard.hash("msg 0"), T0)


def test_tenants_do_not_share_digests():
    guard = DuplicateGuard()
    digest = guard.hash("same text")
    guard.record("t1", digest, T0)
    assert not guard.is_duplicate("t2", digest, T0)

    guard.forget("t1")
    assert not guard.is_duplicate("t1", digest, T0)
