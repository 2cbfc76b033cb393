from __future__ import annotations

from decimal import Decimal

import pytest

from triage.core.errors import InvalidConfidence
from triage.core.fingerprint import canonical_tokens, fingerprint
from triage.pipeline.confidence import normalize_confidence


@pytest.mark.parametrize(
    "raw,expected",
    [
        (0, 0),
        (0.0, 0),
        (1, 100),
        (1.0, 100),
        (0.5, 50),
        (0.855, 86),
        (0.845, 85),
        (0.005, 1),
        (0.004, 0),
        (0.9, 90),
        (0.95, 95),
        (Decimal("0.125"), 13),
    ],
)
def test_normalize_confidence_round_half_up(raw, expected) -> None:  # type: ignore[no-untyped-def]
    assert normalize_confidence(raw) == expected


@pytest.mark.parametrize("raw", [-0.1, 1.5, 1.0000001, float("nan"), float("inf"), "0.5", None, True])
def test_normalize_confidence_rejects_invalid_input(raw) -> None:  # type: ignore[no-untyped-def]
    with pytest.raises(InvalidConfidence):
        normalize_confidence(raw)


def test_invalid_confidence_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        normalize_confidence(2)


def test_fingerprint_is_64_lowercase_hex() -> None:
    fp = fingerprint("ACM_DNS_VALIDATION_PENDING", "ACM", ["dns", "ACM"])
    assert len(fp) == 64
    assert fp == fp.lower()
    int(fp, 16)


def test_fingerprint_ignores_token_order_and_duplicates() -> None:
    a = fingerprint("X", "S", ["b", "a", "c"])
    b = fingerprint("X", "S", ["c", "b", "a", "a", " b "])
    assert a == b


def test_fingerprint_distinguishes_class_service_and_tokens() -> None:
    base = fingerprint("X", "S", ["a"])
    assert fingerprint("Y", "S", ["a"]) != base
    assert fingerprint("X", "T", ["a"]) != base
    assert fingerprint("X", "S", ["a", "b"]) != base


def test_fingerprint_field_boundaries_do_not_collide() -> None:
    # Naive concatenation would make these equal.
    assert fingerprint("AB", "C", []) != fingerprint("A", "BC", [])


def test_canonical_tokens_drops_empties() -> None:
    assert canonical_tokens(["b", "", None, "  ", "a"]) == ["a", "b"]
