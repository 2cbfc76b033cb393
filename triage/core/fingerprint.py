from __future__ import annotations

import hashlib
import json
from typing import Any, Iterable, List

FINGERPRINT_ALGORITHM = "sha256:canonical-json:v1"


def _safe_str(v: Any) -> str:
    if v is None:
        return ""
    return str(v).strip()


def canonical_tokens(tokens: Iterable[Any]) -> List[str]:
    """
    Strip, drop empties, de-duplicate and sort.

    Sorting makes token submission order irrelevant to the resulting fingerprint.
    """
    return sorted({t for t in (_safe_str(x) for x in (tokens or [])) if t})


def canonical_json(obj: Any) -> bytes:
    """Stable byte encoding (sorted keys, no whitespace) used for every hash in this package."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def fingerprint(error_class: str, service: str, tokens: Iterable[Any]) -> str:
    """
    Stable fingerprint for a classified failure.

    sha256 over canonical JSON of `[error_class, service, sorted(tokens)]`; always 64 lowercase
    hex chars (URL/filesystem safe).
    """
    raw = canonical_json([_safe_str(error_class), _safe_str(service), canonical_tokens(tokens)])
    return hashlib.sha256(raw).hexdigest()
