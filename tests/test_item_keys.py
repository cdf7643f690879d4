"""
Tests for the sort-key layout of item results.
"""
import pytest

from cloudaudit.core.exceptions import ItemKeyError
from cloudaudit.utils.item_keys import (
    CEILING,
    RecordType,
    build_current_key,
    build_history_key,
    current_prefix,
    history_prefix,
    invert_timestamp,
    normalize_scope,
    parse_item_key,
    revert_timestamp,
)


def test_inverted_timestamp_is_fixed_width():
    assert invert_timestamp(0) == "9999999999999"
    assert invert_timestamp(CEILING) == "0000000000000"
    assert invert_timestamp(1000) == "9999999998999"
    assert len(invert_timestamp(1_700_000_000_000)) == 13


def test_inverted_timestamp_orders_newest_first():
    older = invert_timestamp(1_700_000_000_000)
    newer = invert_timestamp(1_700_000_000_001)
    assert newer < older


@pytest.mark.parametrize("bad", [-1, CEILING + 1, 1.5, "1000", None, True])
def test_invert_timestamp_rejects_out_of_range_and_non_integers(bad):
    with pytest.raises(ItemKeyError):
        invert_timestamp(bad)


def test_revert_timestamp_inverts():
    assert revert_timestamp(invert_timestamp(1234)) == 1234
    with pytest.raises(ItemKeyError):
        revert_timestamp("123")
    with pytest.raises(ItemKeyError):
        revert_timestamp("12345678901ab")


def test_current_key_layout():
    assert build_current_key("public-access") == "CURRENT#public-access"
    assert build_current_key("public-access", ("us-east-1", "vpc-1")) == "CURRENT#public-access#us-east-1#vpc-1"
    assert build_current_key("public-access", "us-east-1") == "CURRENT#public-access#us-east-1"


def test_history_key_layout():
    key = build_history_key("public-access", None, 1000, "r1")
    assert key == "HISTORY#public-access#9999999998999#r1"


@pytest.mark.parametrize("check_id", ["", "bad#id", None])
def test_keys_reject_invalid_check_ids(check_id):
    with pytest.raises(ItemKeyError):
        build_current_key(check_id)


def test_scope_segments_must_not_contain_separator():
    with pytest.raises(ItemKeyError):
        normalize_scope(["us-east-1#x"])
    with pytest.raises(ItemKeyError):
        normalize_scope([""])


def test_parse_history_key_with_scope():
    parsed = parse_item_key(build_history_key("open-ssh", ("us-east-1", "vpc-9"), 42, "run-7"))
    assert parsed.record_type is RecordType.HISTORY
    assert parsed.check_id == "open-ssh"
    assert parsed.scope == ("us-east-1", "vpc-9")
    assert parsed.timestamp == 42
    assert parsed.run_id == "run-7"


def test_parse_current_key():
    parsed = parse_item_key("CURRENT#open-ssh#eu-west-1")
    assert parsed.record_type is RecordType.CURRENT
    assert parsed.scope == ("eu-west-1",)
    assert parsed.timestamp is None


@pytest.mark.parametrize("key", [
    "",
    "LATEST#open-ssh",
    "CURRENT",
    "CURRENT##x",
    "HISTORY#open-ssh#r1",
    "HISTORY#open-ssh#notatimestamp#r1",
])
def test_parse_rejects_malformed_keys(key):
    with pytest.raises(ItemKeyError):
        parse_item_key(key)


def test_prefixes_do_not_match_sibling_checks():
    assert current_prefix() == "CURRENT#"
    assert history_prefix("open-ssh") == "HISTORY#open-ssh#"
    # "open-ssh-v2" must not fall under the "open-ssh" prefix
    assert not build_history_key("open-ssh-v2", None, 1, "r").startswith(history_prefix("open-ssh"))
