# Ledger API - request handlers for the TillSync store server
# Each handler takes the decoded JSON body and returns (status_code, body)

import logging
import sqlite3
from typing import Any, Dict, Tuple

from .errors import NotFoundError, TillError, ValidationError
from .ledger import INGEST_ACCEPTED, INGEST_DUPLICATE, LedgerService
from .refunds import ALREADY_REFUNDED, NOT_APPLICABLE, NOT_FOUND, REFUNDED, RefundCompensator

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]

REFUND_STATUS_CODES = {
    REFUNDED: 200,
    ALREADY_REFUNDED: 200,
    NOT_APPLICABLE: 409,
    NOT_FOUND: 404,
}


def _error(status_code: int, message: str) -> Response:
    return status_code, {'success': False, 'error': message}


def _field(body: Dict[str, Any], snake: str, camel: str = None, default: Any = None) -> Any:
    # Older till builds post camelCase keys
    if snake in body:
        return body[snake]
    if camel and camel in body:
        return body[camel]
    return default


class LedgerAPI:
    """Framing-free handlers over the ledger and the refund compensator"""

    def __init__(self, ledger: LedgerService, refunds: RefundCompensator = None):
        self.ledger = ledger
        self.refunds = refunds or RefundCompensator(ledger)

    def ingest_transaction(self, body: Any) -> Response:
        """POST /api/transactions - 201 accepted, 200 duplicate, 400 rejected"""
        if not isinstance(body, dict):
            return _error(400, 'Transaction must be a JSON object')
        try:
            result = self.ledger.ingest(body)
        except sqlite3.Error as e:
            logger.error(f"Ledger storage error while ingesting {body.get('external_id')}: {e}")
            return _error(500, 'Ledger storage error')

        payload = result.to_dict()
        if result.status == INGEST_ACCEPTED:
            return 201, payload
        if result.status == INGEST_DUPLICATE:
            return 200, payload
        return 400, payload

    def sync_batch(self, body: Any) -> Response:
        """POST /api/transactions/batch - one ingest per entry, in order"""
        entries = body.get('transactions') if isinstance(body, dict) else body
        if not isinstance(entries, list):
            return _error(400, 'transactions array required')
        try:
            results = self.ledger.ingest_batch(entries)
        except sqlite3.Error as e:
            logger.error(f"Ledger storage error during batch sync: {e}")
            return _error(500, 'Ledger storage error')
        synced = sum(1 for r in results if r.applied)
        return 200, {
            'success': True,
            'synced': synced,
            'failed': len(results) - synced,
            'results': [r.to_dict() for r in results],
        }

    def get_till(self, till_id: str) -> Response:
        """GET /api/till/<id>"""
        try:
            till = self.ledger.get_till(till_id)
        except NotFoundError as e:
            return _error(404, str(e))
        return 200, {'success': True, 'till': till.to_dict()}

    def open_till(self, body: Any) -> Response:
        """POST /api/till/open"""
        if not isinstance(body, dict):
            return _error(400, 'Request body must be a JSON object')
        try:
            till = self.ledger.open_till(
                location_id=_field(body, 'location_id', 'locationId'),
                staff_id=_field(body, 'staff_id', 'staffId'),
                staff_name=_field(body, 'staff_name', 'staffName'),
                opening_balance=_field(body, 'opening_balance', 'openingBalance', 0),
            )
        except ValidationError as e:
            return _error(400, str(e))
        except TillError as e:
            return _error(409, str(e))
        return 201, {'success': True, 'till': till.to_dict()}

    def close_till(self, body: Any) -> Response:
        """POST /api/till/close"""
        if not isinstance(body, dict):
            return _error(400, 'Request body must be a JSON object')
        till_id = _field(body, 'till_id', 'tillId')
        if not till_id:
            return _error(400, 'till_id required')
        tender_counts = _field(body, 'tender_counts', 'tenderCounts')
        if tender_counts is not None and not isinstance(tender_counts, dict):
            return _error(400, 'tender_counts must be an object of tender name to amount')
        try:
            till = self.ledger.close_till(
                till_id,
                physical_count=_field(body, 'physical_count', 'physicalCount'),
                closing_notes=_field(body, 'closing_notes', 'closingNotes'),
                tender_counts=tender_counts,
            )
        except NotFoundError as e:
            return _error(404, str(e))
        except ValidationError as e:
            return _error(400, str(e))
        return 200, {'success': True, 'till': till.to_dict()}

    def adjust_float(self, till_id: str, body: Any) -> Response:
        """PUT /api/till/<id>/adjust-float - top up an open till's opening balance"""
        if not isinstance(body, dict):
            return _error(400, 'Request body must be a JSON object')
        amount = _field(body, 'adjustment_amount', 'adjustmentAmount')
        try:
            till = self.ledger.adjust_float(till_id, amount, reason=body.get('reason'))
        except NotFoundError as e:
            return _error(404, str(e))
        except (ValidationError, TillError) as e:
            return _error(400, str(e))
        adjustment = round(float(amount), 2)
        return 200, {
            'success': True,
            'till': till.to_dict(),
            'previous_balance': round(till.opening_balance - adjustment, 2),
            'adjustment_amount': adjustment,
        }

    def complete_transaction(self, body: Any) -> Response:
        """POST /api/transactions/complete - check out a held transaction"""
        if not isinstance(body, dict):
            return _error(400, 'Request body must be a JSON object')
        transaction_id = _field(body, 'transaction_id', 'transactionId')
        if not transaction_id:
            return _error(400, 'transaction_id required')
        try:
            result = self.ledger.complete(
                transaction_id,
                till_id=_field(body, 'till_id', 'tillId'),
                tender_type=_field(body, 'tender_type', 'tenderType'),
                tender_payments=_field(body, 'tender_payments', 'tenderPayments'),
                amount_paid=_field(body, 'amount_paid', 'amountPaid'),
            )
        except NotFoundError as e:
            return _error(404, str(e))
        return (200 if result.applied else 400), result.to_dict()

    def refund(self, body: Any) -> Response:
        """POST /api/transactions/refund with action 'process' or 'recall'"""
        if not isinstance(body, dict):
            return _error(400, 'Request body must be a JSON object')
        transaction_id = _field(body, 'transaction_id', 'transactionId')
        action = body.get('action')
        if not transaction_id or not action:
            return _error(400, 'transaction_id and action required')

        if action == 'recall':
            try:
                return 200, {'success': True, 'transaction': self.refunds.recall(transaction_id)}
            except NotFoundError as e:
                return _error(404, str(e))

        if action != 'process':
            return _error(400, f"Unknown refund action: {action}")

        result = self.refunds.refund(
            transaction_id,
            reason=_field(body, 'refund_reason', 'refundReason'),
            staff_id=_field(body, 'staff_id', 'staffId'),
        )
        return REFUND_STATUS_CODES.get(result.status, 200), result.to_dict()

    def health(self) -> Response:
        return 200, {'status': 'ok'}
