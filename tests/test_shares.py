import pytest

from tipbank.errors import InvalidSplitError
from tipbank.shares import calculate_shares, member_order, parse_split, round_half_up


def test_three_way_split_on_round_total() -> None:
    shares = calculate_shares(1000, {1: 0.5, 2: 0.3, 3: 0.2})
    assert shares == {1: 500, 2: 300, 3: 200}
    assert sum(shares.values()) == 1000


def test_last_member_absorbs_rounding_remainder() -> None:
    shares = calculate_shares(1001, {1: 1 / 3, 2: 1 / 3, 3: 1 / 3})
    assert shares == {1: 334, 2: 334, 3: 333}
    assert sum(shares.values()) == 1001


@pytest.mark.parametrize("total", [0, 1, 7, 99, 1000, 123457])
def test_shares_always_sum_to_total(total: int) -> None:
    split = {4: 0.125, 9: 0.4, 12: 0.2, 31: 0.275}
    assert sum(calculate_shares(total, split).values()) == total


def test_zero_total_gives_zero_shares() -> None:
    assert calculate_shares(0, {1: 0.6, 2: 0.4}) == {1: 0, 2: 0}


def test_zero_fraction_member_is_kept() -> None:
    assert calculate_shares(500, {1: 1.0, 2: 0.0}) == {1: 500, 2: 0}


def test_empty_split_yields_no_shares() -> None:
    assert calculate_shares(500, {}) == {}


def test_negative_total_is_rejected() -> None:
    with pytest.raises(InvalidSplitError):
        calculate_shares(-1, {1: 1.0})


@pytest.mark.parametrize("fraction", [-0.1, float("nan"), float("inf")])
def test_bad_fraction_is_rejected(fraction: float) -> None:
    with pytest.raises(InvalidSplitError):
        calculate_shares(100, {1: 0.5, 2: fraction})


def test_members_are_ordered_by_string_form() -> None:
    assert member_order({2: 0.5, 10: 0.5}) == [10, 2]
    # 10 sorts first, so 2 takes the remainder
    assert calculate_shares(101, {2: 0.5, 10: 0.5}) == {10: 51, 2: 50}


def test_round_half_up() -> None:
    assert round_half_up(2.5) == 3
    assert round_half_up(2.49) == 2
    assert round_half_up(0.0) == 0


def test_parse_split_coerces_json_keys() -> None:
    assert parse_split({"1": 0.5, "22": 0.5}) == {1: 0.5, 22: 0.5}
    assert parse_split(None) == {}


@pytest.mark.parametrize("raw", [{"abc": 0.5}, {"1": -0.2}, {"1": "half"}])
def test_parse_split_rejects_malformed_maps(raw: dict) -> None:
    with pytest.raises(InvalidSplitError):
        parse_split(raw)
