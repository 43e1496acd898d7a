"""Penny-exact share calculation.

Every share computation in the tip bank goes through ``calculate_shares`` so
that allocation, reconciliation and ownership splits agree on who absorbs the
rounding remainder.
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Mapping

from pydantic import Field, TypeAdapter, ValidationError

from tipbank.errors import InvalidSplitError

Fraction = Annotated[float, Field(ge=0, allow_inf_nan=False)]

_SPLIT_ADAPTER = TypeAdapter(dict[int, Fraction])


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def member_order(split: Mapping[int, Any]) -> list[int]:
    """Deterministic member ordering: lexicographic on the id's string form."""
    return sorted(split, key=str)


def parse_split(raw: Mapping[Any, Any] | None) -> dict[int, float]:
    """Validate a stored or submitted split map (``employee_id -> fraction``).

    JSON objects carry string keys, so keys are coerced to employee ids here.
    """
    if not raw:
        return {}
    try:
        return _SPLIT_ADAPTER.validate_python(dict(raw))
    except ValidationError as exc:
        raise InvalidSplitError(f"invalid split: {exc.errors()[0]['msg']}") from exc


def calculate_shares(total_cents: int, split: Mapping[int, float]) -> dict[int, int]:
    """Split ``total_cents`` by fraction; the result always sums to the total.

    Members are visited in ``member_order``. Each member but the last gets
    ``round_half_up(total * fraction)``; the last gets whatever is left.
    Zero-fraction members are kept in the output with 0.
    """
    if total_cents < 0:
        raise InvalidSplitError("total_cents must be >= 0")
    for member_id, fraction in split.items():
        if fraction is None or not math.isfinite(fraction) or fraction < 0:
            raise InvalidSplitError(f"invalid fraction {fraction!r} for member {member_id}")

    members = member_order(split)
    shares: dict[int, int] = {}
    allocated = 0
    for index, member_id in enumerate(members):
        if index == len(members) - 1:
            shares[member_id] = total_cents - allocated
        else:
            share = round_half_up(total_cents * split[member_id])
            shares[member_id] = share
            allocated += share
    return shares
