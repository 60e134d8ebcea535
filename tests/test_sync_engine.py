# Tests for the sync engine

import pytest
import requests
from tillsync.api import LedgerAPI
from tillsync.errors import TransientNetworkError
from tillsync.ledger import TILLS, TRANSACTIONS, LedgerService, create_store
from tillsync.sync_client import LocalLedgerClient
from tillsync.sync_engine import SyncEngine
from tillsync.transaction_queue import KeyValueStore, LocalTransactionQueue


def _sale(external_id, total=100, till_id=None):
    return {
        'external_id': external_id,
        'items': [{'name': 'Item', 'price': total, 'quantity': 1}],
        'total': total,
        'tender_type': 'CASH',
        'till_id': till_id,
    }


class MockClient:
    """Answers per external_id: 'ok', 'duplicate', 'reject', 'transient' or 'connection'"""

    def __init__(self, behaviour=None):
        self.behaviour = behaviour or {}
        self.calls = []

    def ingest_transaction(self, payload):
        self.calls.append(payload)
        outcome = self.behaviour.get(payload['external_id'], 'ok')
        if outcome == 'transient':
            raise TransientNetworkError('Max retries exceeded')
        if outcome == 'connection':
            raise requests.exceptions.ConnectionError('refused')
        if outcome == 'reject':
            return {'success': False, 'duplicate': False, 'status': 'rejected', 'error': 'items required'}
        return {'success': True, 'duplicate': outcome == 'duplicate', 'status': outcome}


class TestSyncEngine:
    """Test per-entry classification and queue rewrite"""

    def setup_method(self):
        self.client = MockClient()

    def _engine(self, tmp_path, client=None):
        self.storage = KeyValueStore(str(tmp_path / 'client.db'))
        self.queue = LocalTransactionQueue(self.storage)
        return SyncEngine(self.queue, client or self.client, self.storage)

    def test_empty_queue_makes_no_call(self, tmp_path):
        engine = self._engine(tmp_path)

        report = engine.sync_all()

        assert report.attempted == 0
        assert self.client.calls == []

    def test_all_acknowledged_clears_queue(self, tmp_path):
        engine = self._engine(tmp_path)
        self.queue.enqueue(_sale('a'))
        self.queue.enqueue(_sale('b'))

        report = engine.sync_all()

        assert report.attempted == 2
        assert report.acknowledged == 2
        assert self.queue.drain() == []
        assert [c['external_id'] for c in self.client.calls] == ['a', 'b']

    def test_queued_at_not_sent(self, tmp_path):
        engine = self._engine(tmp_path)
        self.queue.enqueue(_sale('a'))

        engine.sync_all()

        assert 'queued_at' not in self.client.calls[0]

    def test_only_transient_entry_retained(self, tmp_path):
        self.client = MockClient({'k': 'transient'})
        engine = self._engine(tmp_path)
        for external_id in ('a', 'k', 'b'):
            self.queue.enqueue(_sale(external_id))

        report = engine.sync_all()

        assert len(self.client.calls) == 3
        assert report.acknowledged == 2
        assert report.retained == 1
        assert [e['external_id'] for e in self.queue.drain()] == ['k']

    def test_connection_error_retained(self, tmp_path):
        self.client = MockClient({'a': 'connection'})
        engine = self._engine(tmp_path)
        self.queue.enqueue(_sale('a'))

        report = engine.sync_all()

        assert report.retained == 1
        assert self.queue.pending_count() == 1

    def test_rejected_and_duplicate_removed(self, tmp_path):
        self.client = MockClient({'bad': 'reject', 'dup': 'duplicate'})
        engine = self._engine(tmp_path)
        self.queue.enqueue(_sale('bad'))
        self.queue.enqueue(_sale('dup'))

        report = engine.sync_all()

        assert report.rejected == 1
        assert report.duplicates == 1
        assert report.rejections == [{'external_id': 'bad', 'reason': 'items required'}]
        assert self.queue.drain() == []

    def test_records_last_sync(self, tmp_path):
        engine = self._engine(tmp_path)
        self.queue.enqueue(_sale('a'))

        report = engine.sync_all()

        assert self.storage.load_state('last_sync_time') == report.finished_at
        assert self.storage.load_state('last_sync_report')['acknowledged'] == 1
        assert engine.get_status()['pending_transactions'] == 0

    def test_sale_queued_during_pass_survives(self, tmp_path):
        engine = self._engine(tmp_path)
        self.queue.enqueue(_sale('old'))

        class EnqueueingClient(MockClient):
            def __init__(self, queue):
                super().__init__()
                self.queue = queue

            def ingest_transaction(self, payload):
                if payload['external_id'] == 'old':
                    self.queue.enqueue(_sale('new-sale'))
                return super().ingest_transaction(payload)

        engine.sync_client = EnqueueingClient(self.queue)
        report = engine.sync_all()

        assert report.acknowledged == 1
        assert [e['external_id'] for e in self.queue.drain()] == ['new-sale']

    def test_retained_entry_keeps_its_place(self, tmp_path):
        self.client = MockClient({'k': 'transient'})
        engine = self._engine(tmp_path)
        self.queue.enqueue(_sale('k'))
        self.queue.enqueue(_sale('a'))

        engine.sync_all()
        self.queue.enqueue(_sale('b'))

        assert [e['external_id'] for e in self.queue.drain()] == ['k', 'b']


class TestSyncAgainstLedger:
    """End to end through the in-process ledger client"""

    def test_duplicate_external_id_applied_once(self, tmp_path):
        ledger = LedgerService(create_store(str(tmp_path / 'ledger.db')))
        till = ledger.open_till('loc1', 'staff1', 'Ada', 5000)
        storage = KeyValueStore(str(tmp_path / 'client.db'))
        queue = LocalTransactionQueue(storage)
        engine = SyncEngine(queue, LocalLedgerClient(LedgerAPI(ledger)), storage)

        queue.enqueue(_sale('abc123', 1500, till.id))
        queue.enqueue(_sale('abc123', 1500, till.id))
        report = engine.sync_all()

        assert report.acknowledged == 1
        assert report.duplicates == 1
        assert queue.drain() == []
        assert ledger.store.count(TRANSACTIONS) == 1
        stored = ledger.store.find_by_id(TILLS, till.id)
        assert stored['transaction_count'] == 1
        assert stored['total_sales'] == 1500

    def test_replay_after_partial_failure(self, tmp_path):
        ledger = LedgerService(create_store(str(tmp_path / 'ledger.db')))
        till = ledger.open_till('loc1', 'staff1', 'Ada', 0)
        storage = KeyValueStore(str(tmp_path / 'client.db'))
        queue = LocalTransactionQueue(storage)
        local = LocalLedgerClient(LedgerAPI(ledger))

        class FlakyClient:
            def __init__(self):
                self.down = {'t2'}

            def ingest_transaction(self, payload):
                if payload['external_id'] in self.down:
                    raise TransientNetworkError('timeout')
                return local.ingest_transaction(payload)

        flaky = FlakyClient()
        engine = SyncEngine(queue, flaky, storage)
        queue.enqueue(_sale('t1', 100, till.id))
        queue.enqueue(_sale('t2', 200, till.id))

        engine.sync_all()
        flaky.down = set()
        report = engine.sync_all()

        assert report.attempted == 1
        assert queue.drain() == []
        assert ledger.get_till(till.id).total_sales == 300


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
