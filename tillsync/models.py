# Models - transaction, payment and till types for TillSync
# Plain dataclasses with dict conversion for the queue, the wire and the document store

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from .errors import ValidationError

STATUS_HELD = 'held'
STATUS_COMPLETED = 'completed'
STATUS_REFUNDED = 'refunded'

TILL_OPEN = 'OPEN'
TILL_CLOSED = 'CLOSED'

DEFAULT_TENDER = 'CASH'

# Anything a client may send, mapped to the canonical lifecycle status
_STATUS_ALIASES = {
    'held': STATUS_HELD,
    'hold': STATUS_HELD,
    'complete': STATUS_COMPLETED,
    'completed': STATUS_COMPLETED,
    'refunded': STATUS_REFUNDED,
    'refund': STATUS_REFUNDED,
}

MONEY_TOLERANCE = 0.005


def normalize_status(value: Optional[str]) -> str:
    """Case-normalize a status ('COMPLETE' -> 'completed'). Missing means completed."""
    if value is None or value == '':
        return STATUS_COMPLETED
    status = _STATUS_ALIASES.get(str(value).strip().lower())
    if status is None:
        raise ValidationError(f"Unknown transaction status: {value!r}")
    return status


def money(value: Any, name: str = 'amount') -> float:
    """Coerce a numeric field, rejecting junk instead of silently zeroing it."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}: {value!r}")
    try:
        return round(float(value), 2)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {name}: {value!r}")


@dataclass
class LineItem:
    """A single line on a sale"""
    name: str
    price: float
    quantity: int
    product_id: Optional[str] = None

    @property
    def line_total(self) -> float:
        return round(self.price * self.quantity, 2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LineItem':
        if not isinstance(data, dict):
            raise ValidationError(f"Invalid line item: {data!r}")
        # 'qty' and 'unit_price' are accepted from older till builds
        quantity = data.get('quantity', data.get('qty', 1))
        price = data.get('price', data.get('unit_price', 0))
        try:
            quantity = int(quantity)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid quantity for {data.get('name')!r}: {quantity!r}")
        product_id = data.get('product_id')
        return cls(
            name=str(data.get('name') or ''),
            price=money(price, 'price'),
            quantity=quantity,
            product_id=str(product_id) if product_id else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'product_id': self.product_id,
            'name': self.name,
            'price': self.price,
            'quantity': self.quantity,
        }


@dataclass(frozen=True)
class TenderPayment:
    """One leg of a split payment"""
    tender_name: str
    amount: float
    tender_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'tender_id': self.tender_id, 'tender_name': self.tender_name, 'amount': self.amount}


@dataclass(frozen=True)
class SinglePayment:
    """Legacy single-tender payment; reconciles the full transaction total"""
    tender_name: str
    amount: float

    def components(self) -> List[Tuple[str, float]]:
        return [(self.tender_name or DEFAULT_TENDER, self.amount)]


@dataclass(frozen=True)
class SplitPayment:
    """Payment split across several tenders"""
    payments: Tuple[TenderPayment, ...]

    @property
    def amount(self) -> float:
        return round(sum(p.amount for p in self.payments), 2)

    def components(self) -> List[Tuple[str, float]]:
        return [(p.tender_name or DEFAULT_TENDER, p.amount) for p in self.payments]


Payment = Union[SinglePayment, SplitPayment]


def payment_from_fields(tender_type: Optional[str], tender_payments: Optional[list],
                        total: Optional[float]) -> Optional[Payment]:
    """Build the payment variant from the wire fields; None when neither is present."""
    has_split = isinstance(tender_payments, list) and len(tender_payments) > 0
    has_single = bool(tender_type)
    if has_split and has_single:
        raise ValidationError("Transaction has both tender_type and tender_payments")
    if has_split:
        legs = []
        for entry in tender_payments:
            if not isinstance(entry, dict):
                raise ValidationError(f"Invalid tender payment: {entry!r}")
            tender_id = entry.get('tender_id')
            legs.append(TenderPayment(
                tender_name=str(entry.get('tender_name') or DEFAULT_TENDER),
                amount=money(entry.get('amount'), 'tender amount'),
                tender_id=str(tender_id) if tender_id else None,
            ))
        return SplitPayment(tuple(legs))
    if has_single:
        return SinglePayment(str(tender_type), total if total is not None else 0.0)
    return None


def payment_components(payment: Optional[Payment]) -> List[Tuple[str, float]]:
    return payment.components() if payment is not None else []


@dataclass
class Transaction:
    """A sale as queued by the till and stored by the ledger"""
    items: List[LineItem] = field(default_factory=list)
    total: Optional[float] = None
    subtotal: float = 0.0
    tax: float = 0.0
    discount: float = 0.0
    change: float = 0.0
    amount_paid: Optional[float] = None
    payment: Optional[Payment] = None
    status: str = STATUS_COMPLETED
    external_id: Optional[str] = None
    id: Optional[str] = None
    till_id: Optional[str] = None
    staff_name: str = 'Unknown'
    staff_id: Optional[str] = None
    location: str = 'Default Location'
    device: Optional[str] = None
    customer_name: Optional[str] = None
    table_name: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    synced_at: Optional[str] = None
    source: Optional[str] = None
    inventory_updated: bool = False
    inventory_restocked_at: Optional[str] = None
    sub_status: Optional[str] = None
    refund_reason: Optional[str] = None
    refund_by: Optional[str] = None
    refunded_at: Optional[str] = None

    @property
    def tender_type(self) -> Optional[str]:
        return self.payment.tender_name if isinstance(self.payment, SinglePayment) else None

    @property
    def tender_payments(self) -> List[TenderPayment]:
        return list(self.payment.payments) if isinstance(self.payment, SplitPayment) else []

    def payment_components(self) -> List[Tuple[str, float]]:
        return payment_components(self.payment)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """Parse a queued/wire/stored transaction. Raises ValidationError on bad shapes."""
        if not isinstance(data, dict):
            raise ValidationError("Transaction must be an object")
        raw_items = data.get('items')
        if raw_items is not None and not isinstance(raw_items, list):
            raise ValidationError("items must be a list")
        items = [LineItem.from_dict(i) for i in (raw_items or [])]

        total = data.get('total')
        total = money(total, 'total') if total is not None else None
        payment = payment_from_fields(data.get('tender_type'), data.get('tender_payments'), total)

        amount_paid = data.get('amount_paid')
        if amount_paid is not None:
            amount_paid = money(amount_paid, 'amount_paid')

        created_at = data.get('created_at')
        if isinstance(created_at, datetime):
            created_at = created_at.isoformat()

        return cls(
            items=items,
            total=total,
            subtotal=money(data.get('subtotal') or 0, 'subtotal'),
            tax=money(data.get('tax') or 0, 'tax'),
            discount=money(data.get('discount') or 0, 'discount'),
            change=money(data.get('change') or 0, 'change'),
            amount_paid=amount_paid,
            payment=payment,
            status=normalize_status(data.get('status')),
            external_id=_opt_str(data.get('external_id')),
            id=_opt_str(data.get('id')),
            till_id=_opt_str(data.get('till_id')),
            staff_name=data.get('staff_name') or 'Unknown',
            staff_id=_opt_str(data.get('staff_id')),
            location=data.get('location') or 'Default Location',
            device=data.get('device'),
            customer_name=data.get('customer_name'),
            table_name=data.get('table_name'),
            created_at=created_at,
            completed_at=data.get('completed_at'),
            synced_at=data.get('synced_at'),
            source=data.get('source'),
            inventory_updated=bool(data.get('inventory_updated', False)),
            inventory_restocked_at=data.get('inventory_restocked_at'),
            sub_status=data.get('sub_status'),
            refund_reason=data.get('refund_reason'),
            refund_by=_opt_str(data.get('refund_by')),
            refunded_at=data.get('refunded_at'),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'id': self.id,
            'external_id': self.external_id,
            'items': [i.to_dict() for i in self.items],
            'subtotal': self.subtotal,
            'tax': self.tax,
            'discount': self.discount,
            'total': self.total,
            'change': self.change,
            'amount_paid': self.amount_paid,
            'status': self.status,
            'till_id': self.till_id,
            'staff_name': self.staff_name,
            'staff_id': self.staff_id,
            'location': self.location,
            'device': self.device,
            'customer_name': self.customer_name,
            'table_name': self.table_name,
            'created_at': self.created_at,
            'completed_at': self.completed_at,
            'synced_at': self.synced_at,
            'source': self.source,
            'inventory_updated': self.inventory_updated,
            'inventory_restocked_at': self.inventory_restocked_at,
            'sub_status': self.sub_status,
            'refund_reason': self.refund_reason,
            'refund_by': self.refund_by,
            'refunded_at': self.refunded_at,
        }
        if isinstance(self.payment, SinglePayment):
            data['tender_type'] = self.payment.tender_name
        elif isinstance(self.payment, SplitPayment):
            data['tender_payments'] = [p.to_dict() for p in self.payment.payments]
        return data


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, '') else None


class TenderBreakdown:
    """Per-tender running amounts for a till.

    Only apply_payment and reverse_payment change it; amounts never go negative.
    """

    def __init__(self, amounts: Optional[Dict[str, float]] = None):
        self._amounts: Dict[str, float] = {}
        for tender, amount in (amounts or {}).items():
            self._amounts[tender] = max(round(float(amount), 2), 0.0)

    def apply_payment(self, tender_name: Optional[str], amount: float) -> None:
        key = tender_name or DEFAULT_TENDER
        self._amounts[key] = max(round(self._amounts.get(key, 0.0) + amount, 2), 0.0)

    def reverse_payment(self, tender_name: Optional[str], amount: float) -> None:
        key = tender_name or DEFAULT_TENDER
        self._amounts[key] = max(round(self._amounts.get(key, 0.0) - amount, 2), 0.0)

    def get(self, tender_name: str, default: float = 0.0) -> float:
        return self._amounts.get(tender_name, default)

    def total(self) -> float:
        return round(sum(self._amounts.values()), 2)

    def items(self):
        return self._amounts.items()

    def as_dict(self) -> Dict[str, float]:
        return dict(sorted(self._amounts.items()))

    def __iter__(self) -> Iterator[str]:
        return iter(self._amounts)

    def __len__(self) -> int:
        return len(self._amounts)

    def __eq__(self, other) -> bool:
        if isinstance(other, TenderBreakdown):
            return self._amounts == other._amounts
        if isinstance(other, dict):
            return self._amounts == other
        return NotImplemented

    def __repr__(self) -> str:
        return f"TenderBreakdown({self.as_dict()!r})"


@dataclass
class Till:
    """A per-location cash drawer session"""
    id: str
    location_id: str
    opening_balance: float = 0.0
    status: str = TILL_OPEN
    staff_id: Optional[str] = None
    staff_name: str = 'Unknown'
    transactions: List[str] = field(default_factory=list)
    total_sales: float = 0.0
    transaction_count: int = 0
    tender_breakdown: TenderBreakdown = field(default_factory=TenderBreakdown)
    opened_at: Optional[str] = None
    closed_at: Optional[str] = None
    closing_notes: Optional[str] = None
    expected_closing_balance: Optional[float] = None
    physical_count: Optional[float] = None
    variance: Optional[float] = None
    variance_percentage: Optional[float] = None
    tender_variances: Dict[str, Dict[str, float]] = field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.status == TILL_OPEN

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Till':
        return cls(
            id=data['id'],
            location_id=data.get('location_id'),
            opening_balance=float(data.get('opening_balance') or 0),
            status=data.get('status', TILL_OPEN),
            staff_id=data.get('staff_id'),
            staff_name=data.get('staff_name') or 'Unknown',
            transactions=list(data.get('transactions') or []),
            total_sales=float(data.get('total_sales') or 0),
            transaction_count=int(data.get('transaction_count') or 0),
            tender_breakdown=TenderBreakdown(data.get('tender_breakdown') or {}),
            opened_at=data.get('opened_at'),
            closed_at=data.get('closed_at'),
            closing_notes=data.get('closing_notes'),
            expected_closing_balance=data.get('expected_closing_balance'),
            physical_count=data.get('physical_count'),
            variance=data.get('variance'),
            variance_percentage=data.get('variance_percentage'),
            tender_variances=dict(data.get('tender_variances') or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'location_id': self.location_id,
            'opening_balance': self.opening_balance,
            'status': self.status,
            'staff_id': self.staff_id,
            'staff_name': self.staff_name,
            'transactions': list(self.transactions),
            'total_sales': self.total_sales,
            'transaction_count': self.transaction_count,
            'tender_breakdown': self.tender_breakdown.as_dict(),
            'opened_at': self.opened_at,
            'closed_at': self.closed_at,
            'closing_notes': self.closing_notes,
            'expected_closing_balance': self.expected_closing_balance,
            'physical_count': self.physical_count,
            'variance': self.variance,
            'variance_percentage': self.variance_percentage,
            'tender_variances': dict(self.tender_variances),
        }
