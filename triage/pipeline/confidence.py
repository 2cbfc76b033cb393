from __future__ import annotations

import math
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from triage.core.errors import InvalidConfidence

# Formula of record. Changing it requires a new policy version; snapshots record this string.
NORMALIZATION_FORMULA = "round_half_up(raw * 100)"
NORMALIZATION_SCALE = "0-100"


def normalize_confidence(raw_confidence: Any) -> int:
    """
    Map a raw confidence in [0, 1] to an integer 0-100 using round-half-up.

    Decimal(str(x)) avoids binary float artifacts: 0.855 -> 86, not 85.
    Out-of-range, NaN and non-numeric input raise InvalidConfidence (never clamped).
    """
    if isinstance(raw_confidence, bool) or not isinstance(raw_confidence, (int, float, Decimal)):
        raise InvalidConfidence(raw_confidence)
    if isinstance(raw_confidence, float) and math.isnan(raw_confidence):
        raise InvalidConfidence(raw_confidence)
    d = Decimal(str(raw_confidence))
    if d.is_nan() or d < 0 or d > 1:
        raise InvalidConfidence(raw_confidence)
    return int((d * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
