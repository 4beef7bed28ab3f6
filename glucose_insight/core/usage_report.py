"""
AI usage reporting.

Aggregates usage log rows into totals, a per-model breakdown and a daily
series. Costs are never stored; they are recomputed from the pricing table.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, timezone
from typing import Dict, Iterable, List, Sequence, Tuple

from glucose_insight.storage.models import UsageLogRecord

from .pricing import DEFAULT_PRICING_TABLE, PricingTable

COST_DIGITS = 6
AVERAGE_DIGITS = 1


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _call_day(record: UsageLogRecord) -> date:
    called_at = record.called_at
    if called_at.tzinfo is not None:
        called_at = called_at.astimezone(timezone.utc)
    return called_at.date()


@dataclass(frozen=True)
class ModelUsage:
    """Usage totals for one model."""
    model: str
    calls: int
    successful_calls: int
    failed_calls: int
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float
    avg_input_tokens: float
    avg_output_tokens: float
    avg_duration_ms: float
    avg_cost_per_call: float


@dataclass(frozen=True)
class DailyUsage:
    """Usage totals for one UTC calendar day."""
    day: date
    calls: int
    successful_calls: int
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost: float


@dataclass(frozen=True)
class UsageReport:
    """Summary of AI usage over a set of log rows."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_input_tokens: float = 0.0
    avg_output_tokens: float = 0.0
    avg_duration_ms: float = 0.0
    avg_cost_per_call: float = 0.0
    by_model: List[ModelUsage] = field(default_factory=list)
    by_day: List[DailyUsage] = field(default_factory=list)

    @classmethod
    def from_records(
        cls,
        records: Iterable[UsageLogRecord],
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
    ) -> "UsageReport":
        """Build a report from usage rows.

        Token and duration averages at the top level cover successful calls
        only, since failed calls report zero tokens.

        Args:
            records: Usage rows in any order
            pricing: Table used to price each row

        Returns:
            UsageReport; an empty report when there are no rows
        """
        priced = priced_logs(records, pricing)
        if not priced:
            return cls()

        successes = [record for record, _ in priced if record.success]
        total_cost = sum(cost for _, cost in priced)

        return cls(
            total_calls=len(priced),
            successful_calls=len(successes),
            failed_calls=len(priced) - len(successes),
            total_input_tokens=sum(r.input_tokens for r, _ in priced),
            total_output_tokens=sum(r.output_tokens for r, _ in priced),
            total_tokens=sum(r.total_tokens for r, _ in priced),
            total_cost=round(total_cost, COST_DIGITS),
            avg_input_tokens=round(_mean([r.input_tokens for r in successes]), AVERAGE_DIGITS),
            avg_output_tokens=round(_mean([r.output_tokens for r in successes]), AVERAGE_DIGITS),
            avg_duration_ms=round(
                _mean([r.duration_ms for r in successes if r.duration_ms is not None]),
                AVERAGE_DIGITS,
            ),
            avg_cost_per_call=round(total_cost / len(priced), COST_DIGITS),
            by_model=_model_breakdown(priced),
            by_day=_daily_breakdown(priced),
        )


def priced_logs(
    records: Iterable[UsageLogRecord],
    pricing: PricingTable = DEFAULT_PRICING_TABLE,
) -> List[Tuple[UsageLogRecord, float]]:
    """Pair each usage row with its recomputed cost in USD."""
    return [
        (record, pricing.compute_cost(record.model, record.input_tokens, record.output_tokens))
        for record in records
    ]


def _model_breakdown(priced: List[Tuple[UsageLogRecord, float]]) -> List[ModelUsage]:
    groups: Dict[str, List[Tuple[UsageLogRecord, float]]] = defaultdict(list)
    for record, cost in priced:
        groups[record.model].append((record, cost))

    breakdown = []
    for model, rows in groups.items():
        records = [r for r, _ in rows]
        cost = sum(c for _, c in rows)
        successful = sum(1 for r in records if r.success)
        breakdown.append(ModelUsage(
            model=model,
            calls=len(rows),
            successful_calls=successful,
            failed_calls=len(rows) - successful,
            input_tokens=sum(r.input_tokens for r in records),
            output_tokens=sum(r.output_tokens for r in records),
            total_tokens=sum(r.total_tokens for r in records),
            cost=round(cost, COST_DIGITS),
            avg_input_tokens=round(_mean([r.input_tokens for r in records]), AVERAGE_DIGITS),
            avg_output_tokens=round(_mean([r.output_tokens for r in records]), AVERAGE_DIGITS),
            avg_duration_ms=round(
                _mean([r.duration_ms for r in records if r.duration_ms is not None]),
                AVERAGE_DIGITS,
            ),
            avg_cost_per_call=round(cost / len(rows), COST_DIGITS),
        ))

    # Busiest model first; ties by name keep the order stable
    breakdown.sort(key=lambda m: (-m.calls, m.model))
    return breakdown


def _daily_breakdown(priced: List[Tuple[UsageLogRecord, float]]) -> List[DailyUsage]:
    groups: Dict[date, List[Tuple[UsageLogRecord, float]]] = defaultdict(list)
    for record, cost in priced:
        groups[_call_day(record)].append((record, cost))

    return [
        DailyUsage(
            day=day,
            calls=len(rows),
            successful_calls=sum(1 for r, _ in rows if r.success),
            input_tokens=sum(r.input_tokens for r, _ in rows),
            output_tokens=sum(r.output_tokens for r, _ in rows),
            total_tokens=sum(r.total_tokens for r, _ in rows),
            cost=round(sum(c for _, c in rows), COST_DIGITS),
        )
        for day, rows in sorted(groups.items())
    ]
