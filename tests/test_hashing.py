"""Tests for core/hashing.py — content digest and field-level diff."""

from cvesync.core.hashing import compute_hash, diff_records


def test_hash_ignores_key_order():
    a = {"id": "CVE-1", "nested": {"x": 1, "y": [1, 2]}, "score": 7.5}
    b = {"score": 7.5, "nested": {"y": [1, 2], "x": 1}, "id": "CVE-1"}
    assert compute_hash(a) == compute_hash(b)


def test_hash_changes_with_any_field():
    base = {"id": "CVE-1", "description": "x", "refs": ["a", "b"]}
    assert compute_hash(base) != compute_hash({**base, "description": "y"})
    assert compute_hash(base) != compute_hash({**base, "refs": ["b", "a"]})
    assert compute_hash(base) != compute_hash({**base, "extra": None})


def test_hash_field_is_excluded():
    record = {"id": "CVE-1", "description": "x"}
    assert compute_hash(record) == compute_hash({**record, "hash": "whatever"})


def test_hash_is_sha256_hex():
    digest = compute_hash({"id": "CVE-1"})
    assert len(digest) == 64
    int(digest, 16)


def test_diff_reports_exactly_the_changed_keys():
    old = {"id": "CVE-1", "description": "old", "score": 5.0, "refs": ["a"]}
    new = {"id": "CVE-1", "description": "new", "score": 5.0, "refs": ["a"]}
    assert diff_records(old, new) == {"description": {"from": "old", "to": "new"}}


def test_diff_handles_added_and_removed_keys():
    diff = diff_records({"a": 1}, {"b": 2})
    assert diff == {"a": {"from": 1, "to": None}, "b": {"from": None, "to": 2}}


def test_diff_reports_nested_change_once_at_top_level():
    old = {"affected": [{"product": "widget", "versions": [{"version": "1.0"}]}]}
    new = {"affected": [{"product": "widget", "versions": [{"version": "1.1"}]}]}
    diff = diff_records(old, new)
    assert list(diff) == ["affected"]
    assert diff["affected"]["from"] == old["affected"]
    assert diff["affected"]["to"] == new["affected"]


def test_diff_skips_hash_and_equal_records():
    assert diff_records({"id": "x", "hash": "1"}, {"id": "x", "hash": "2"}) == {}
