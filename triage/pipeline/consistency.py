"""Consistency evaluator and reporting aggregates.

Everything here is a pure function of a list of verdicts: no state is kept, so any report can be
re-derived from the verdict repository at any time.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from triage.core.models import (
    ConsistencyReport,
    ErrorClassKpi,
    ProposedAction,
    Verdict,
    VerdictKpis,
    VerdictStatistics,
    VerdictSummary,
)

TOP_ERROR_CLASSES = 5


def _round_half_up(value: Decimal, places: str = "1") -> Decimal:
    return value.quantize(Decimal(places), rounding=ROUND_HALF_UP)


def _percent(part: int, whole: int) -> int:
    return int(_round_half_up(Decimal(part) * 100 / Decimal(whole)))


def _mean(values: Sequence[int]) -> float:
    if not values:
        return 0.0
    return float(_round_half_up(Decimal(sum(values)) / Decimal(len(values)), "0.01"))


def evaluate(verdicts: Iterable[Verdict]) -> ConsistencyReport:
    """
    Group verdicts by fingerprint; a group is consistent iff all its verdicts agree on
    (error_class, confidence_score). Score is 100 when there are no groups.
    """
    groups: Dict[str, Set[Tuple[str, int]]] = defaultdict(set)
    for v in verdicts:
        groups[v.fingerprint_id].add((v.error_class, v.confidence_score))

    total = len(groups)
    if total == 0:
        return ConsistencyReport(total_groups=0, consistent_groups=0, consistency_score_percent=100)

    inconsistent = sorted(fp for fp, outcomes in groups.items() if len(outcomes) > 1)
    consistent = total - len(inconsistent)
    return ConsistencyReport(
        total_groups=total,
        consistent_groups=consistent,
        consistency_score_percent=_percent(consistent, total),
        inconsistent_fingerprints=inconsistent,
    )


def to_summary(verdict: Verdict, policy_version: Optional[str] = None) -> VerdictSummary:
    return VerdictSummary(
        error_class=verdict.error_class,
        service=verdict.service,
        confidence_score=verdict.confidence_score,
        proposed_action=verdict.proposed_action,
        fingerprint_id=verdict.fingerprint_id,
        policy_version=policy_version,
        created_at=verdict.created_at,
    )


def build_kpis(verdicts: Iterable[Verdict]) -> VerdictKpis:
    items: List[Verdict] = list(verdicts)

    counts_by_action: Dict[str, int] = {a.value: 0 for a in ProposedAction}
    by_class: Dict[str, List[int]] = defaultdict(list)
    for v in items:
        counts_by_action[ProposedAction(v.proposed_action).value] += 1
        by_class[v.error_class].append(v.confidence_score)

    # Count desc, then class name so ties are stable.
    ranked = sorted(by_class.items(), key=lambda kv: (-len(kv[1]), kv[0]))[:TOP_ERROR_CLASSES]
    top = [ErrorClassKpi(error_class=k, count=len(scores), avg_confidence=_mean(scores)) for k, scores in ranked]

    return VerdictKpis(
        total_verdicts=len(items),
        avg_confidence=_mean([v.confidence_score for v in items]),
        consistency_score_percent=evaluate(items).consistency_score_percent,
        counts_by_action=counts_by_action,
        top_error_classes=top,
    )


def build_statistics(verdicts: Iterable[Verdict]) -> List[VerdictStatistics]:
    """
    Per (error_class, service) statistics, largest group first.

    Ties on count order by class then service; the most common action ties break on action name.
    """
    groups: Dict[Tuple[str, str], List[Verdict]] = defaultdict(list)
    for v in verdicts:
        groups[(v.error_class, v.service)].append(v)

    out: List[VerdictStatistics] = []
    for (error_class, service), items in groups.items():
        scores = [v.confidence_score for v in items]
        actions = Counter(ProposedAction(v.proposed_action).value for v in items)
        top_action = min(actions.items(), key=lambda kv: (-kv[1], kv[0]))[0]
        out.append(
            VerdictStatistics(
                error_class=error_class,
                service=service,
                total_count=len(items),
                avg_confidence=_mean(scores),
                min_confidence=min(scores),
                max_confidence=max(scores),
                most_common_action=ProposedAction(top_action),
                affected_executions=len({v.execution_id for v in items}),
            )
        )
    out.sort(key=lambda s: (-s.total_count, s.error_class, s.service))
    return out
