"""
Billing aggregator

Folds billable session rows into per-payer invoice previews.
"""
from dataclasses import dataclass, field
from typing import Iterable, List


@dataclass(frozen=True)
class BillableRow:
    """One billable session for one enrollment."""
    payer_client_id: str
    class_group_id: str
    class_group_name: str
    price_cents: int
    currency: str


@dataclass
class PreviewLine:
    class_group_id: str
    class_group_name: str
    sessions: int
    price_cents: int
    currency: str

    @property
    def amount_cents(self) -> int:
        return self.sessions * self.price_cents

    def to_dict(self) -> dict:
        return {
            'classGroupId': self.class_group_id,
            'classGroupName': self.class_group_name,
            'sessions': self.sessions,
            'priceCents': self.price_cents,
            'amountCents': self.amount_cents,
        }


@dataclass
class PayerPreview:
    payer_client_id: str
    currency: str
    lines: List[PreviewLine] = field(default_factory=list)

    @property
    def total_sessions(self) -> int:
        return sum(line.sessions for line in self.lines)

    @property
    def total_amount_cents(self) -> int:
        return sum(line.amount_cents for line in self.lines)

    def to_dict(self) -> dict:
        return {
            'payerClientId': self.payer_client_id,
            'currency': self.currency,
            'totalSessions': self.total_sessions,
            'totalAmountCents': self.total_amount_cents,
            'lines': [line.to_dict() for line in self.lines],
        }


def aggregate_billing_preview(rows: Iterable[BillableRow]) -> List[PayerPreview]:
    """
    Group rows by payer, then by class group. A line takes the first price seen
    for its group; totals are derived from the lines so input order only
    decides that price. Output is sorted by payer id, lines by group name.
    """
    currencies = {}
    lines_by_payer = {}
    for row in rows:
        payer_key = str(row.payer_client_id)
        currencies.setdefault(payer_key, row.currency)
        lines = lines_by_payer.setdefault(payer_key, {})

        group_key = str(row.class_group_id)
        if group_key not in lines:
            lines[group_key] = PreviewLine(
                class_group_id=group_key,
                class_group_name=row.class_group_name,
                sessions=0,
                price_cents=row.price_cents,
                currency=row.currency,
            )
        lines[group_key].sessions += 1

    return [
        PayerPreview(
            payer_client_id=payer_key,
            currency=currencies[payer_key],
            lines=sorted(
                lines_by_payer[payer_key].values(),
                key=lambda line: (line.class_group_name, line.class_group_id),
            ),
        )
        for payer_key in sorted(lines_by_payer)
    ]
