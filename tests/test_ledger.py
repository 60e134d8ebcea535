# Tests for ledger reconciliation

import pytest
from tillsync.errors import NotFoundError, PersistenceConflict, TillError, ValidationError
from tillsync.ledger import (
    INGEST_ACCEPTED,
    INGEST_DUPLICATE,
    INGEST_REJECTED,
    TILLS,
    TRANSACTIONS,
    LedgerService,
    create_store,
    recompute,
)
from tillsync.models import Till, Transaction


def _sale(external_id, total, till_id=None, tender='CASH', **extra):
    sale = {
        'external_id': external_id,
        'items': [{'name': 'Item', 'price': total, 'quantity': 1}],
        'subtotal': total,
        'total': total,
        'till_id': till_id,
        'staff_name': 'Ada',
    }
    if tender:
        sale['tender_type'] = tender
    sale.update(extra)
    return sale


class LedgerTestBase:

    @pytest.fixture(autouse=True)
    def _ledger(self, tmp_path):
        self.store = create_store(str(tmp_path / 'ledger.db'))
        self.ledger = LedgerService(self.store)
        self.till = self.ledger.open_till('loc1', 'staff1', 'Ada', 5000)


class TestIngest(LedgerTestBase):
    """Test validation, dedup and the till fold"""

    def test_scenario_two_cash_sales(self):
        self.ledger.ingest(_sale('t1', 1500, self.till.id))
        self.ledger.ingest(_sale('t2', 2300, self.till.id))

        till = self.ledger.get_till(self.till.id)

        assert till.total_sales == 3800
        assert till.tender_breakdown == {'CASH': 3800}
        assert till.transaction_count == 2
        assert till.opening_balance == 5000

    def test_same_external_id_counted_once(self):
        first = self.ledger.ingest(_sale('abc123', 1500, self.till.id))
        second = self.ledger.ingest(_sale('abc123', 1500, self.till.id))

        assert first.status == INGEST_ACCEPTED
        assert second.status == INGEST_DUPLICATE
        assert second.transaction_id == first.transaction_id
        assert self.store.count(TRANSACTIONS) == 1

        stored = self.store.find_by_id(TILLS, self.till.id)
        assert stored['total_sales'] == 1500
        assert stored['transactions'] == [first.transaction_id]

    def test_unique_key_catches_lost_race(self, monkeypatch):
        first = self.ledger.ingest(_sale('abc123', 1500, self.till.id))
        # A concurrent submit that checked before the first insert committed
        monkeypatch.setattr(self.ledger, '_find_duplicate', lambda tx: None)

        second = self.ledger.ingest(_sale('abc123', 1500, self.till.id))

        assert second.status == INGEST_DUPLICATE
        assert second.transaction_id == first.transaction_id
        assert self.store.count(TRANSACTIONS) == 1
        stored = self.store.find_by_id(TILLS, self.till.id)
        assert stored['transaction_count'] == 1
        assert stored['total_sales'] == 1500
        with pytest.raises(PersistenceConflict):
            self.store.insert(TRANSACTIONS, {'external_id': 'abc123'})

    def test_fingerprint_dedup_without_matching_external_id(self):
        created_at = '2026-03-01T10:15:00'
        first = self.ledger.ingest(_sale('x1', 900, self.till.id, created_at=created_at))
        second = self.ledger.ingest(_sale('x2', 900, self.till.id, created_at=created_at))

        assert second.status == INGEST_DUPLICATE
        assert second.transaction_id == first.transaction_id
        assert self.ledger.get_till(self.till.id).transaction_count == 1

    def test_fingerprint_needs_till_and_timestamp(self):
        self.ledger.ingest(_sale('x1', 900))
        second = self.ledger.ingest(_sale('x2', 900))

        assert second.status == INGEST_ACCEPTED

    def test_status_is_case_normalized(self):
        result = self.ledger.ingest(_sale('t1', 100, self.till.id, status='COMPLETE'))

        assert self.ledger.get_transaction(result.transaction_id).status == 'completed'

    def test_split_payment_fold(self):
        sale = _sale('t1', 1500, self.till.id, tender=None, amount_paid=1500, tender_payments=[
            {'tender_id': 't-cash', 'tender_name': 'CASH', 'amount': 1000},
            {'tender_id': 't-card', 'tender_name': 'CARD', 'amount': 500},
        ])
        result = self.ledger.ingest(sale)

        assert result.status == INGEST_ACCEPTED
        till = self.ledger.get_till(self.till.id)
        assert till.tender_breakdown == {'CASH': 1000, 'CARD': 500}
        assert till.total_sales == 1500

    def test_split_amount_paid_defaults_to_sum(self):
        sale = _sale('t1', 1500, self.till.id, tender=None, tender_payments=[
            {'tender_name': 'CASH', 'amount': 1000},
            {'tender_name': 'CARD', 'amount': 500},
        ])
        result = self.ledger.ingest(sale)

        assert self.ledger.get_transaction(result.transaction_id).amount_paid == 1500

    @pytest.mark.parametrize('override', [
        {'items': []},
        {'total': None},
        {'tender_type': None},
        {'tender_payments': [{'tender_name': 'CARD', 'amount': 100}]},
        {'status': 'refunded'},
        {'status': 'pending'},
        {'total': 'abc'},
        {'total': -100},
        {'amount_paid': -100},
    ])
    def test_rejected(self, override):
        sale = _sale('bad', 100, self.till.id)
        sale.update(override)

        result = self.ledger.ingest(sale)

        assert result.status == INGEST_REJECTED
        assert result.reason
        assert self.store.count(TRANSACTIONS) == 0
        assert self.store.find_by_id(TILLS, self.till.id)['total_sales'] == 0

    def test_negative_split_leg_rejected(self):
        sale = _sale('neg', 0, self.till.id, tender=None, tender_payments=[
            {'tender_name': 'CASH', 'amount': -50},
            {'tender_name': 'CARD', 'amount': 50},
        ])

        result = self.ledger.ingest(sale)

        assert result.status == INGEST_REJECTED
        assert 'CASH' in result.reason
        assert self.ledger.get_till(self.till.id).tender_breakdown == {}

    def test_split_sum_must_match_amount_paid(self):
        sale = _sale('t1', 1500, self.till.id, tender=None, amount_paid=1500, tender_payments=[
            {'tender_name': 'CASH', 'amount': 1000},
        ])

        result = self.ledger.ingest(sale)

        assert result.status == INGEST_REJECTED

    def test_held_sale_leaves_till_untouched(self):
        result = self.ledger.ingest(_sale('h1', 700, self.till.id, tender=None, status='HELD'))

        assert result.status == INGEST_ACCEPTED
        assert not result.till_linked
        tx = self.ledger.get_transaction(result.transaction_id)
        assert tx.status == 'held'
        assert tx.till_id is None
        assert self.ledger.get_till(self.till.id).transaction_count == 0

    def test_complete_held_sale(self):
        held = self.ledger.ingest(_sale('h1', 700, self.till.id, tender=None, status='held'))

        result = self.ledger.complete(held.transaction_id, till_id=self.till.id, tender_type='CARD')

        assert result.status == INGEST_ACCEPTED
        assert result.till_linked
        till = self.ledger.get_till(self.till.id)
        assert till.tender_breakdown == {'CARD': 700}
        assert till.transaction_count == 1

        again = self.ledger.complete(held.transaction_id, till_id=self.till.id, tender_type='CARD')
        assert again.status == INGEST_DUPLICATE
        assert self.ledger.get_till(self.till.id).transaction_count == 1

    def test_complete_unknown_transaction(self):
        with pytest.raises(NotFoundError):
            self.ledger.complete('nope', tender_type='CASH')

    def test_closed_till_is_not_linked(self):
        self.ledger.close_till(self.till.id)

        result = self.ledger.ingest(_sale('t1', 1500, self.till.id))

        assert result.status == INGEST_ACCEPTED
        assert not result.till_linked
        assert self.ledger.get_transaction(result.transaction_id).till_id == self.till.id
        assert self.ledger.get_till(self.till.id).total_sales == 0

    def test_missing_till_is_not_linked(self):
        result = self.ledger.ingest(_sale('t1', 1500, 'no-such-till'))

        assert result.status == INGEST_ACCEPTED
        assert not result.till_linked

    def test_batch_same_as_individual(self):
        results = self.ledger.ingest_batch([
            _sale('t1', 100, self.till.id),
            _sale('t1', 100, self.till.id),
            _sale('t2', 200, self.till.id, items=[]),
        ])

        assert [r.status for r in results] == [INGEST_ACCEPTED, INGEST_DUPLICATE, INGEST_REJECTED]


class TestInventory(LedgerTestBase):
    """Test the once-only stock decrement"""

    def test_decrement_once(self):
        self.ledger.set_stock('p1', 10, 'Cola')
        sale = _sale('t1', 300, self.till.id, items=[
            {'product_id': 'p1', 'name': 'Cola', 'price': 100, 'quantity': 3},
        ])

        result = self.ledger.ingest(sale)
        self.ledger.ingest(sale)

        assert result.inventory.ok
        assert self.ledger.get_product('p1')['stock'] == 7
        assert self.ledger.get_transaction(result.transaction_id).inventory_updated

    def test_missing_product_does_not_fail_sale(self):
        sale = _sale('t1', 300, self.till.id, items=[
            {'product_id': 'ghost', 'name': 'Ghost', 'price': 300, 'quantity': 1},
        ])

        result = self.ledger.ingest(sale)

        assert result.status == INGEST_ACCEPTED
        assert not result.inventory.ok
        assert result.inventory.failure is not None

    def test_items_without_products_are_skipped(self):
        result = self.ledger.ingest(_sale('t1', 300, self.till.id))

        assert result.inventory.skipped


class TestTills(LedgerTestBase):
    """Test till lifecycle and recomputation"""

    def test_one_open_till_per_location(self):
        with pytest.raises(TillError):
            self.ledger.open_till('loc1', 'staff2', 'Bola', 100)

        other = self.ledger.open_till('loc2', 'staff2', 'Bola', 100)
        assert other.is_open

    def test_reopen_after_close(self):
        self.ledger.close_till(self.till.id)

        reopened = self.ledger.open_till('loc1', 'staff1', 'Ada', 0)

        assert reopened.id != self.till.id

    def test_get_till_unknown(self):
        with pytest.raises(NotFoundError):
            self.ledger.get_till('nope')

    def test_get_till_heals_stored_drift(self):
        self.ledger.ingest(_sale('t1', 1500, self.till.id))
        self.store.update(TILLS, self.till.id, set_fields={
            'total_sales': 99999,
            'tender_breakdown': {'CASH': 1},
        })

        till = self.ledger.get_till(self.till.id)

        assert till.total_sales == 1500
        assert till.tender_breakdown == {'CASH': 1500}

    def test_close_till_freezes_and_computes_variance(self):
        self.ledger.ingest(_sale('t1', 1500, self.till.id))
        self.ledger.ingest(_sale('t2', 700, self.till.id, tender='CARD'))

        closed = self.ledger.close_till(self.till.id, physical_count=6400, closing_notes='short')

        assert closed.status == 'CLOSED'
        assert closed.total_sales == 2200
        assert closed.expected_closing_balance == 7200
        assert closed.variance == -800
        assert closed.variance_percentage == -11.11
        assert closed.closing_notes == 'short'

        again = self.ledger.close_till(self.till.id, physical_count=1)
        assert again.variance == -800
        assert self.ledger.get_till(self.till.id).tender_breakdown == {'CASH': 1500, 'CARD': 700}

    def test_close_with_tender_counts(self):
        self.ledger.ingest(_sale('t1', 1500, self.till.id))
        self.ledger.ingest(_sale('t2', 700, self.till.id, tender='CARD'))

        closed = self.ledger.close_till(self.till.id, tender_counts={'CASH': 1450, 'CARD': 700})

        assert closed.tender_variances == {
            'CASH': {'processed': 1500, 'counted': 1450, 'variance': -50},
            'CARD': {'processed': 700, 'counted': 700, 'variance': 0},
        }
        assert closed.physical_count == 2150
        assert closed.variance == -50
        assert closed.variance_percentage == round(-50 / 7200 * 100, 2)

    def test_close_without_counts_has_no_variance(self):
        closed = self.ledger.close_till(self.till.id)

        assert closed.variance is None
        assert closed.variance_percentage is None
        assert closed.expected_closing_balance == 5000

    def test_adjust_float_tops_up_open_till(self):
        self.ledger.ingest(_sale('t1', 1500, self.till.id))

        till = self.ledger.adjust_float(self.till.id, 2000, reason='extra change')

        assert till.opening_balance == 7000
        assert till.total_sales == 1500
        assert self.ledger.close_till(self.till.id).expected_closing_balance == 8500

    @pytest.mark.parametrize('amount', [0, -10, 'lots'])
    def test_adjust_float_needs_positive_amount(self, amount):
        with pytest.raises(ValidationError):
            self.ledger.adjust_float(self.till.id, amount)

    def test_adjust_float_refused_on_closed_till(self):
        self.ledger.close_till(self.till.id)

        with pytest.raises(TillError):
            self.ledger.adjust_float(self.till.id, 100)
        with pytest.raises(NotFoundError):
            self.ledger.adjust_float('nope', 100)
        assert self.ledger.get_till(self.till.id).opening_balance == 5000


class TestRecompute:
    """recompute is a pure function of the till and its transactions"""

    def _tx(self, tx_id, total, status='completed', tender='CASH'):
        tx = Transaction.from_dict(_sale(tx_id, total, 'till1', tender=tender, status=status))
        tx.id = tx_id
        return tx

    def test_sums_linked_completed_only(self):
        till = Till(id='till1', location_id='loc1', transactions=['a', 'b', 'c'])
        transactions = [
            self._tx('a', 100),
            self._tx('b', 50, tender='CARD'),
            self._tx('c', 75, status='held', tender=None),
            self._tx('d', 1000),
        ]

        aggregate = recompute(till, transactions)

        assert aggregate.tender_breakdown == {'CASH': 100, 'CARD': 50}
        assert aggregate.total_sales == 150
        assert aggregate.transaction_count == 2

    def test_duplicates_in_input_counted_once(self):
        till = Till(id='till1', location_id='loc1', transactions=['a'])

        aggregate = recompute(till, [self._tx('a', 100), self._tx('a', 100)])

        assert aggregate.total_sales == 100
        assert aggregate.transaction_count == 1

    def test_empty_link_set_returns_stored_values(self):
        till = Till.from_dict({
            'id': 'till1', 'location_id': 'loc1', 'transactions': [],
            'total_sales': 40, 'transaction_count': 1, 'tender_breakdown': {'CASH': 40},
        })

        aggregate = recompute(till, [self._tx('a', 100)])

        assert aggregate.total_sales == 40
        assert aggregate.tender_breakdown == {'CASH': 40}


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
