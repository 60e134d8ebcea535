# Ledger - server-side reconciliation of till transactions for TillSync
# Validates, deduplicates and persists sales, and folds them into till aggregates

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .document_store import DocumentStore
from .errors import (
    CompensationFailure,
    DuplicateError,
    NotFoundError,
    PersistenceConflict,
    TillError,
    ValidationError,
)
from .models import (
    DEFAULT_TENDER,
    MONEY_TOLERANCE,
    STATUS_COMPLETED,
    STATUS_HELD,
    STATUS_REFUNDED,
    TILL_CLOSED,
    TILL_OPEN,
    SplitPayment,
    TenderBreakdown,
    Till,
    Transaction,
    money,
    payment_from_fields,
)

logger = logging.getLogger(__name__)

TRANSACTIONS = 'transactions'
TILLS = 'tills'
PRODUCTS = 'products'

# external_id dedups transactions; open_location is only set while a till is OPEN
UNIQUE_FIELDS = {
    TRANSACTIONS: 'external_id',
    TILLS: 'open_location',
}

INGEST_ACCEPTED = 'accepted'
INGEST_DUPLICATE = 'duplicate'
INGEST_REJECTED = 'rejected'


def create_store(db_path: str = None) -> DocumentStore:
    """Document store configured with the ledger's unique keys."""
    return DocumentStore(db_path, unique_fields=UNIQUE_FIELDS)


@dataclass
class StepOutcome:
    """Result of one best-effort side effect (inventory, till reversal)"""
    step: str
    ok: bool = True
    skipped: bool = False
    detail: Optional[str] = None
    failure: Optional[CompensationFailure] = None

    @classmethod
    def done(cls, step: str, detail: str = None) -> 'StepOutcome':
        return cls(step=step, detail=detail)

    @classmethod
    def skip(cls, step: str, detail: str) -> 'StepOutcome':
        return cls(step=step, skipped=True, detail=detail)

    @classmethod
    def failed(cls, step: str, message: str) -> 'StepOutcome':
        return cls(step=step, ok=False, detail=message, failure=CompensationFailure(step, message))

    def to_dict(self) -> Dict[str, Any]:
        return {'step': self.step, 'ok': self.ok, 'skipped': self.skipped, 'detail': self.detail}


@dataclass
class IngestResult:
    status: str
    transaction_id: Optional[str] = None
    external_id: Optional[str] = None
    reason: Optional[str] = None
    till_linked: bool = False
    inventory: Optional[StepOutcome] = None

    @property
    def applied(self) -> bool:
        """True when the ledger holds this transaction (new or duplicate)."""
        return self.status in (INGEST_ACCEPTED, INGEST_DUPLICATE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.applied,
            'status': self.status,
            'duplicate': self.status == INGEST_DUPLICATE,
            'transaction_id': self.transaction_id,
            'external_id': self.external_id,
            'reason': self.reason,
            'till_linked': self.till_linked,
            'inventory': self.inventory.to_dict() if self.inventory else None,
        }


@dataclass
class TillAggregate:
    tender_breakdown: TenderBreakdown = field(default_factory=TenderBreakdown)
    total_sales: float = 0.0
    transaction_count: int = 0


def effective_components(tx: Transaction) -> List[Tuple[str, float]]:
    """Split payments when present, else the single tender; CASH when no tender is recorded."""
    components = tx.payment_components()
    if not components:
        return [(DEFAULT_TENDER, tx.total or 0.0)]
    return components


def recompute(till: Till, transactions: Iterable[Transaction]) -> TillAggregate:
    """Rebuild a till's aggregates from the transactions it links.

    Only completed transactions in till.transactions count. With nothing
    linked, the stored aggregates are returned unchanged.
    """
    linked = set(till.transactions)
    if not linked:
        return TillAggregate(
            tender_breakdown=TenderBreakdown(till.tender_breakdown.as_dict()),
            total_sales=till.total_sales,
            transaction_count=till.transaction_count,
        )
    breakdown = TenderBreakdown()
    seen = set()
    for tx in transactions:
        if tx.id not in linked or tx.id in seen or tx.status != STATUS_COMPLETED:
            continue
        seen.add(tx.id)
        for tender_name, amount in effective_components(tx):
            breakdown.apply_payment(tender_name, amount)
    return TillAggregate(
        tender_breakdown=breakdown,
        total_sales=breakdown.total(),
        transaction_count=len(seen),
    )


def validate_transaction(tx: Transaction) -> None:
    """Raise ValidationError unless tx can be ingested."""
    if not tx.items:
        raise ValidationError("Invalid transaction: items array required")
    if tx.total is None:
        raise ValidationError("Invalid transaction: total required")
    if tx.total < 0:
        raise ValidationError(f"Invalid transaction: negative total {tx.total}")
    if tx.amount_paid is not None and tx.amount_paid < 0:
        raise ValidationError(f"Invalid transaction: negative amount_paid {tx.amount_paid}")
    if tx.status == STATUS_REFUNDED:
        raise ValidationError("Refunded transactions cannot be ingested; use refund")
    if tx.status == STATUS_HELD:
        return
    if tx.payment is None:
        raise ValidationError("Invalid transaction: tender_type or tender_payments required")
    for tender_name, amount in tx.payment_components():
        if amount < 0:
            raise ValidationError(f"Invalid transaction: negative {tender_name} payment {amount}")
    if isinstance(tx.payment, SplitPayment) and tx.amount_paid is not None:
        if abs(tx.payment.amount - tx.amount_paid) > MONEY_TOLERANCE:
            raise ValidationError(
                f"Split payments sum to {tx.payment.amount} but amount_paid is {tx.amount_paid}"
            )


class LedgerService:
    """Sole writer of till aggregates; every write is one atomic store update"""

    def __init__(self, store: DocumentStore):
        self.store = store

    # ------------------------------------------------------------------
    # Tills
    # ------------------------------------------------------------------

    def open_till(self, location_id: str, staff_id: str = None, staff_name: str = None,
                  opening_balance: float = 0) -> Till:
        if not location_id:
            raise ValidationError("location_id required to open a till")
        if opening_balance is None:
            raise ValidationError("opening_balance required to open a till")
        existing = self.store.find_one(TILLS, {'location_id': location_id, 'status': TILL_OPEN})
        if existing:
            raise TillError(f"A till is already open for location {location_id} ({existing['id']})")

        till = Till(
            id=uuid.uuid4().hex,
            location_id=location_id,
            opening_balance=money(opening_balance, 'opening_balance'),
            staff_id=staff_id,
            staff_name=staff_name or 'Unknown',
            opened_at=datetime.now().isoformat(),
        )
        doc = till.to_dict()
        doc['open_location'] = location_id
        try:
            self.store.insert(TILLS, doc)
        except PersistenceConflict:
            raise TillError(f"A till is already open for location {location_id}")
        logger.info(f"Till {till.id} opened by {till.staff_name} - balance {till.opening_balance:.2f}")
        return till

    def get_till(self, till_id: str) -> Till:
        """Till snapshot with tender breakdown and sales recomputed from linked transactions."""
        doc = self.store.find_by_id(TILLS, till_id)
        if not doc:
            raise NotFoundError(f"Till {till_id} not found")
        till = Till.from_dict(doc)
        if not till.is_open:
            # Closed tills report the aggregates frozen at close
            return till

        linked = [Transaction.from_dict(d) for d in self.store.find_by_ids(TRANSACTIONS, till.transactions)]
        aggregate = recompute(till, linked)
        if aggregate.total_sales != till.total_sales:
            logger.warning(
                f"Till {till_id} stored total_sales {till.total_sales:.2f} "
                f"differs from recomputed {aggregate.total_sales:.2f}"
            )
        till.tender_breakdown = aggregate.tender_breakdown
        till.total_sales = aggregate.total_sales
        till.transaction_count = aggregate.transaction_count
        return till

    def close_till(self, till_id: str, physical_count: float = None, closing_notes: str = None,
                   tender_counts: Dict[str, float] = None) -> Till:
        """Freeze the till's recomputed aggregates. Closing a closed till is a no-op.

        tender_counts maps tender name to the amount counted at close; each
        counted tender gets its own variance against the processed amount and
        the overall variance is their sum. Without it, physical_count is
        compared with the expected closing balance.
        """
        till = self.get_till(till_id)
        if not till.is_open:
            logger.info(f"Till {till_id} already closed")
            return till

        expected = round(till.opening_balance + till.total_sales, 2)
        variance = None
        tender_variances = {}
        if tender_counts:
            counted_total = 0.0
            for tender_name, counted in tender_counts.items():
                counted = money(counted, f'{tender_name} count')
                processed = till.tender_breakdown.get(tender_name)
                tender_variances[tender_name] = {
                    'processed': processed,
                    'counted': counted,
                    'variance': round(counted - processed, 2),
                }
                counted_total += counted
            physical_count = round(counted_total, 2)
            variance = round(sum(v['variance'] for v in tender_variances.values()), 2)
        elif physical_count is not None:
            physical_count = money(physical_count, 'physical_count')
            variance = round(physical_count - expected, 2)

        variance_percentage = None
        if variance is not None:
            variance_percentage = round(variance / expected * 100, 2) if expected > 0 else 0.0

        updated = self.store.update(
            TILLS, till_id,
            match={'status': TILL_OPEN},
            set_fields={
                'status': TILL_CLOSED,
                'closed_at': datetime.now().isoformat(),
                'closing_notes': closing_notes,
                'total_sales': till.total_sales,
                'transaction_count': till.transaction_count,
                'tender_breakdown': till.tender_breakdown.as_dict(),
                'expected_closing_balance': expected,
                'physical_count': physical_count,
                'variance': variance,
                'variance_percentage': variance_percentage,
                'tender_variances': tender_variances,
            },
            unset=['open_location'],
        )
        if updated is None:
            return self.get_till(till_id)
        logger.info(f"Till {till_id} closed - sales {till.total_sales:.2f}, expected {expected:.2f}, "
                    f"variance {variance}")
        return Till.from_dict(updated)

    def adjust_float(self, till_id: str, amount: float, reason: str = None) -> Till:
        """Top up the opening balance of an open till without recording a sale."""
        amount = money(amount, 'adjustment amount')
        if amount <= 0:
            raise ValidationError("Invalid adjustment amount - must be a positive number")
        doc = self.store.find_by_id(TILLS, till_id)
        if not doc:
            raise NotFoundError(f"Till {till_id} not found")

        updated = self.store.update(
            TILLS, till_id,
            match={'status': TILL_OPEN},
            inc={'opening_balance': amount},
        )
        if updated is None:
            raise TillError(f"Cannot adjust float on a closed till ({till_id})")
        logger.info(
            f"Float adjusted for till {till_id}: {updated['opening_balance'] - amount:.2f} "
            f"+ {amount:.2f} = {updated['opening_balance']:.2f} ({reason or 'no reason given'})"
        )
        return self.get_till(till_id)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        doc = self.store.find_by_id(TRANSACTIONS, transaction_id)
        if not doc:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction.from_dict(doc)

    def ingest(self, data: Union[Dict[str, Any], Transaction]) -> IngestResult:
        """Accept a transaction exactly once and fold it into its till."""
        external_id = data.external_id if isinstance(data, Transaction) else (data or {}).get('external_id')
        try:
            tx = data if isinstance(data, Transaction) else Transaction.from_dict(data)
            validate_transaction(tx)
        except ValidationError as e:
            logger.warning(f"Rejected transaction {external_id}: {e}")
            return IngestResult(INGEST_REJECTED, external_id=external_id, reason=str(e))

        try:
            self._ensure_new(tx)
        except DuplicateError as e:
            logger.info(f"Duplicate transaction {tx.external_id} - {e}")
            return IngestResult(INGEST_DUPLICATE, transaction_id=e.transaction_id, external_id=tx.external_id)

        now = datetime.now().isoformat()
        tx.id = uuid.uuid4().hex
        tx.synced_at = now
        tx.created_at = tx.created_at or now
        tx.inventory_updated = False
        tx.inventory_restocked_at = None
        if tx.status == STATUS_HELD:
            tx.till_id = None
        else:
            tx.completed_at = tx.completed_at or now
        if tx.amount_paid is None and tx.payment is not None:
            tx.amount_paid = tx.payment.amount

        try:
            self.store.insert(TRANSACTIONS, tx.to_dict())
        except PersistenceConflict:
            # Lost a race with a concurrent submit of the same external_id
            existing = self.store.find_one(TRANSACTIONS, {'external_id': tx.external_id})
            logger.info(f"Duplicate transaction {tx.external_id} caught by unique key")
            return IngestResult(
                INGEST_DUPLICATE,
                transaction_id=existing['id'] if existing else None,
                external_id=tx.external_id,
            )
        logger.info(f"Transaction {tx.id} saved ({tx.status}, {tx.total:.2f}, till {tx.till_id})")

        result = IngestResult(INGEST_ACCEPTED, transaction_id=tx.id, external_id=tx.external_id)
        if tx.status == STATUS_COMPLETED:
            if tx.till_id:
                result.till_linked = self._fold_into_till(tx)
            result.inventory = self._apply_inventory(tx)
        return result

    def ingest_batch(self, entries: List[Dict[str, Any]]) -> List[IngestResult]:
        return [self.ingest(entry) for entry in entries]

    def complete(self, transaction_id: str, till_id: str = None, tender_type: str = None,
                 tender_payments: list = None, amount_paid: float = None) -> IngestResult:
        """Check out a held transaction: held -> completed, then fold it like a new sale."""
        tx = self.get_transaction(transaction_id)
        if tx.status == STATUS_COMPLETED:
            return IngestResult(INGEST_DUPLICATE, transaction_id=tx.id, external_id=tx.external_id)
        if tx.status != STATUS_HELD:
            return IngestResult(INGEST_REJECTED, transaction_id=tx.id, external_id=tx.external_id,
                                reason=f"Cannot complete a {tx.status} transaction")
        try:
            payment = payment_from_fields(tender_type, tender_payments, tx.total)
            tx.payment = payment
            tx.status = STATUS_COMPLETED
            tx.amount_paid = money(amount_paid, 'amount_paid') if amount_paid is not None else None
            validate_transaction(tx)
        except ValidationError as e:
            return IngestResult(INGEST_REJECTED, transaction_id=tx.id, external_id=tx.external_id,
                                reason=str(e))

        paid = tx.to_dict()
        updated = self.store.update(
            TRANSACTIONS, tx.id,
            match={'status': STATUS_HELD},
            set_fields={
                'status': STATUS_COMPLETED,
                'till_id': till_id,
                'tender_type': paid.get('tender_type'),
                'tender_payments': paid.get('tender_payments'),
                'amount_paid': tx.amount_paid if tx.amount_paid is not None else payment.amount,
                'completed_at': datetime.now().isoformat(),
            },
        )
        if updated is None:
            return IngestResult(INGEST_DUPLICATE, transaction_id=tx.id, external_id=tx.external_id)
        if not updated.get('tender_payments'):
            updated.pop('tender_payments', None)
        if not updated.get('tender_type'):
            updated.pop('tender_type', None)

        tx = Transaction.from_dict(updated)
        logger.info(f"Held transaction {tx.id} completed ({tx.total:.2f}, till {till_id})")
        result = IngestResult(INGEST_ACCEPTED, transaction_id=tx.id, external_id=tx.external_id)
        if till_id:
            result.till_linked = self._fold_into_till(tx)
        result.inventory = self._apply_inventory(tx)
        return result

    def _ensure_new(self, tx: Transaction) -> None:
        existing = self._find_duplicate(tx)
        if existing:
            raise DuplicateError(f"already exists as {existing['id']}", transaction_id=existing['id'])

    def _find_duplicate(self, tx: Transaction) -> Optional[Dict[str, Any]]:
        if tx.external_id:
            existing = self.store.find_one(TRANSACTIONS, {'external_id': tx.external_id})
            if existing:
                return existing
        # Retries that lost their external id still carry the same sale fingerprint
        if tx.created_at and tx.till_id:
            return self.store.find_one(TRANSACTIONS, {
                'created_at': tx.created_at,
                'total': tx.total,
                'till_id': tx.till_id,
                'staff_name': tx.staff_name,
            })
        return None

    def _fold_into_till(self, tx: Transaction) -> bool:
        """Link tx to its till and add its money to the aggregates, at most once."""
        inc: Dict[str, float] = {'total_sales': tx.total, 'transaction_count': 1}
        for tender_name, amount in effective_components(tx):
            key = f'tender_breakdown.{tender_name}'
            inc[key] = round(inc.get(key, 0) + amount, 2)
        try:
            updated = self.store.update(
                TILLS, tx.till_id,
                match={'status': TILL_OPEN, 'transactions': {'$ne': tx.id}},
                add_to_set={'transactions': tx.id},
                inc=inc,
            )
        except sqlite3.Error:
            logger.exception(f"Failed to link transaction {tx.id} to till {tx.till_id}")
            return False
        if updated is None:
            till = self.store.find_by_id(TILLS, tx.till_id)
            if till is None:
                logger.warning(f"Till {tx.till_id} not found - transaction {tx.id} not linked")
            elif till.get('status') != TILL_OPEN:
                logger.warning(f"Till {tx.till_id} is {till.get('status')} - transaction {tx.id} not linked")
            return False
        logger.info(f"Till {tx.till_id} updated - total sales now {updated['total_sales']:.2f}")
        return True

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def set_stock(self, product_id: str, stock: int, name: str = None) -> Dict[str, Any]:
        existing = self.store.find_by_id(PRODUCTS, product_id)
        if existing:
            return self.store.update(PRODUCTS, product_id, set_fields={'stock': stock})
        return self.store.insert(PRODUCTS, {'id': product_id, 'name': name or product_id, 'stock': stock})

    def get_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        return self.store.find_by_id(PRODUCTS, product_id)

    def _apply_inventory(self, tx: Transaction) -> StepOutcome:
        """Decrement stock once per transaction. Failures are logged, never raised."""
        step = 'inventory_decrement'
        lines = [i for i in tx.items if i.product_id and i.quantity > 0]
        if not lines:
            return StepOutcome.skip(step, 'no stocked items')
        try:
            claimed = self.store.update(
                TRANSACTIONS, tx.id,
                match={'inventory_updated': {'$ne': True}},
                set_fields={'inventory_updated': True},
            )
        except sqlite3.Error as e:
            logger.warning(f"Failed to update product quantities for {tx.id}: {e}")
            return StepOutcome.failed(step, str(e))
        if claimed is None:
            return StepOutcome.skip(step, 'already applied')
        tx.inventory_updated = True
        return adjust_stock(self.store, step, lines, direction=-1)


def adjust_stock(store: DocumentStore, step: str, lines, direction: int) -> StepOutcome:
    """Move stock for each line by direction * quantity, collecting per-product problems."""
    problems = []
    for item in lines:
        try:
            updated = store.update(PRODUCTS, item.product_id, inc={'stock': direction * item.quantity})
        except sqlite3.Error as e:
            logger.warning(f"Stock update failed for {item.product_id}: {e}")
            problems.append(f"{item.product_id}: {e}")
            continue
        if updated is None:
            logger.warning(f"Product {item.product_id} not found - stock not adjusted")
            problems.append(f"{item.product_id}: not found")
    if problems:
        return StepOutcome.failed(step, '; '.join(problems))
    return StepOutcome.done(step, f"{len(lines)} product(s) adjusted")
