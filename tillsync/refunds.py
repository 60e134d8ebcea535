# Refunds - compensating actions for reconciled TillSync transactions
# completed -> refunded, then best-effort restock and till reversal

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .errors import NotFoundError
from .ledger import (
    TILLS,
    TRANSACTIONS,
    LedgerService,
    StepOutcome,
    adjust_stock,
    effective_components,
)
from .models import STATUS_COMPLETED, STATUS_HELD, STATUS_REFUNDED, TILL_OPEN, Transaction

logger = logging.getLogger(__name__)

REFUNDED = 'refunded'
ALREADY_REFUNDED = 'already_refunded'
NOT_APPLICABLE = 'not_applicable'
NOT_FOUND = 'not_found'

DEFAULT_REASON = 'Refunded by staff'


@dataclass
class RefundResult:
    status: str
    transaction_id: str
    refunded_at: Optional[str] = None
    compensation: List[StepOutcome] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def partial_compensation(self) -> bool:
        return any(not step.ok for step in self.compensation)

    @property
    def failures(self):
        return [step.failure for step in self.compensation if step.failure is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.status in (REFUNDED, ALREADY_REFUNDED, NOT_APPLICABLE),
            'status': self.status,
            'transaction_id': self.transaction_id,
            'refunded_at': self.refunded_at,
            'partial_compensation': self.partial_compensation,
            'compensation': [step.to_dict() for step in self.compensation],
            'message': self.message,
        }


class RefundCompensator:
    """Reverses a completed transaction's effect on stock and its till"""

    def __init__(self, ledger: LedgerService):
        self.ledger = ledger
        self.store = ledger.store

    def refund(self, transaction_id: str, reason: str = None, staff_id: str = None) -> RefundResult:
        doc = self.store.find_by_id(TRANSACTIONS, transaction_id)
        if not doc:
            logger.warning(f"Refund requested for unknown transaction {transaction_id}")
            return RefundResult(NOT_FOUND, transaction_id, message='Transaction not found')

        status = doc.get('status')
        if status == STATUS_REFUNDED:
            return RefundResult(ALREADY_REFUNDED, transaction_id, refunded_at=doc.get('refunded_at'),
                                message='Transaction already refunded')
        if status == STATUS_HELD:
            return RefundResult(NOT_APPLICABLE, transaction_id,
                                message='Held transactions have nothing to refund')

        refunded_at = datetime.now().isoformat()
        updated = self.store.update(
            TRANSACTIONS, transaction_id,
            match={'status': STATUS_COMPLETED},
            set_fields={
                'status': STATUS_REFUNDED,
                'sub_status': 'void',
                'refund_reason': reason or DEFAULT_REASON,
                'refund_by': staff_id,
                'refunded_at': refunded_at,
            },
        )
        if updated is None:
            # Someone else refunded it between the read and the update
            current = self.store.find_by_id(TRANSACTIONS, transaction_id) or {}
            return RefundResult(ALREADY_REFUNDED, transaction_id, refunded_at=current.get('refunded_at'),
                                message='Transaction already refunded')
        logger.info(f"Transaction {transaction_id} marked as refunded by {staff_id}")

        tx = Transaction.from_dict(updated)
        result = RefundResult(REFUNDED, transaction_id, refunded_at=refunded_at)
        result.compensation.append(self._restock(tx))
        result.compensation.append(self._reverse_till(tx))
        for failure in result.failures:
            logger.error(f"Refund of {transaction_id} only partially compensated - {failure}")
        return result

    def recall(self, transaction_id: str) -> Dict[str, Any]:
        """Cart contents of a past sale, for re-entry into a new one. Read-only."""
        doc = self.store.find_by_id(TRANSACTIONS, transaction_id)
        if not doc:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return {
            'id': doc['id'],
            'items': doc.get('items', []),
            'total': doc.get('total'),
            'subtotal': doc.get('subtotal'),
            'tax': doc.get('tax'),
            'discount': doc.get('discount'),
            'tender_type': doc.get('tender_type'),
            'tender_payments': doc.get('tender_payments'),
        }

    def _restock(self, tx: Transaction) -> StepOutcome:
        step = 'inventory_restock'
        if not tx.inventory_updated:
            return StepOutcome.skip(step, 'sale never decremented stock')
        lines = [i for i in tx.items if i.product_id and i.quantity > 0]
        if not lines:
            return StepOutcome.skip(step, 'no stocked items')
        try:
            claimed = self.store.update(
                TRANSACTIONS, tx.id,
                match={'inventory_restocked_at': None},
                set_fields={'inventory_restocked_at': datetime.now().isoformat()},
            )
        except sqlite3.Error as e:
            logger.warning(f"Restock claim failed for {tx.id}: {e}")
            return StepOutcome.failed(step, str(e))
        if claimed is None:
            return StepOutcome.skip(step, 'already restocked')
        return adjust_stock(self.store, step, lines, direction=1)

    def _reverse_till(self, tx: Transaction) -> StepOutcome:
        """Undo the till fold, only while the till is OPEN and still links tx."""
        step = 'till_reversal'
        if not tx.till_id:
            return StepOutcome.skip(step, 'not linked to a till')

        inc: Dict[str, float] = {'total_sales': -(tx.total or 0), 'transaction_count': -1}
        for tender_name, amount in effective_components(tx):
            key = f'tender_breakdown.{tender_name}'
            inc[key] = round(inc.get(key, 0) - amount, 2)
        try:
            updated = self.store.update(
                TILLS, tx.till_id,
                match={'status': TILL_OPEN, 'transactions': tx.id},
                pull={'transactions': tx.id},
                inc=inc,
                floor_at_zero=list(inc),
            )
        except sqlite3.Error as e:
            logger.warning(f"Till reversal failed for {tx.id} on till {tx.till_id}: {e}")
            return StepOutcome.failed(step, str(e))

        if updated is None:
            till = self.store.find_by_id(TILLS, tx.till_id)
            if till is None:
                return StepOutcome.failed(step, f"till {tx.till_id} not found")
            if till.get('status') != TILL_OPEN:
                logger.info(f"Till {tx.till_id} is {till.get('status')} - refund recorded without reversal")
                return StepOutcome.skip(step, f"till {till.get('status')}")
            return StepOutcome.skip(step, 'transaction not linked to till')
        logger.info(f"Till {tx.till_id} reversed - total sales now {updated['total_sales']:.2f}")
        return StepOutcome.done(step)
