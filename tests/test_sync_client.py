# Tests for the REST sync client

import pytest
import requests
from tillsync.errors import TransientNetworkError
from tillsync.sync_client import SyncClient


class MockResponse:
    def __init__(self, status_code, body=None, text=''):
        self.status_code = status_code
        self._body = body
        self.text = text

    def json(self):
        if self._body is None:
            raise ValueError('No JSON object could be decoded')
        return self._body


class MockPost:
    """Replays a scripted list of responses (or exceptions)"""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def __call__(self, url, json=None, timeout=None):
        self.calls.append({'url': url, 'json': json, 'timeout': timeout})
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class TestSyncClient:
    """Test response classification and retries"""

    def setup_method(self):
        self.client = SyncClient('http://ledger.local/', api_key='secret', timeout=3,
                                 max_retries=3, retry_delay=0)

    def test_headers(self):
        assert self.client.session.headers['Authorization'] == 'Bearer secret'
        assert self.client.session.headers['Content-Type'] == 'application/json'

    def test_accepted(self, monkeypatch):
        post = MockPost(MockResponse(201, {'status': 'accepted', 'transaction_id': 'srv1'}))
        monkeypatch.setattr(self.client.session, 'post', post)

        result = self.client.ingest_transaction({'external_id': 'a'})

        assert result['success']
        assert not result['duplicate']
        assert result['transaction_id'] == 'srv1'
        assert post.calls[0]['url'] == 'http://ledger.local/api/transactions'
        assert post.calls[0]['json'] == {'external_id': 'a'}

    def test_duplicate(self, monkeypatch):
        post = MockPost(MockResponse(200, {'status': 'duplicate', 'duplicate': True}))
        monkeypatch.setattr(self.client.session, 'post', post)

        result = self.client.ingest_transaction({'external_id': 'a'})

        assert result['success']
        assert result['duplicate']

    def test_validation_rejection_not_retried(self, monkeypatch):
        post = MockPost(MockResponse(400, {'status': 'rejected', 'reason': 'items required'}))
        monkeypatch.setattr(self.client.session, 'post', post)

        result = self.client.ingest_transaction({'external_id': 'a'})

        assert not result['success']
        assert result['error'] == 'items required'
        assert len(post.calls) == 1

    def test_server_error_then_success(self, monkeypatch):
        post = MockPost(MockResponse(503, text='busy'), MockResponse(201, {'status': 'accepted'}))
        monkeypatch.setattr(self.client.session, 'post', post)

        result = self.client.ingest_transaction({'external_id': 'a'})

        assert result['success']
        assert len(post.calls) == 2

    def test_exhausted_retries_raise_transient(self, monkeypatch):
        post = MockPost(
            requests.exceptions.Timeout(),
            requests.exceptions.ConnectionError('refused'),
            MockResponse(500, text='boom'),
        )
        monkeypatch.setattr(self.client.session, 'post', post)

        with pytest.raises(TransientNetworkError):
            self.client.ingest_transaction({'external_id': 'a'})
        assert len(post.calls) == 3

    def test_auth_failure_is_transient(self, monkeypatch):
        post = MockPost(MockResponse(401, text='unauthorized'))
        monkeypatch.setattr(self.client.session, 'post', post)

        with pytest.raises(TransientNetworkError):
            self.client.ingest_transaction({'external_id': 'a'})

    def test_retry_backoff(self, monkeypatch):
        sleeps = []
        monkeypatch.setattr('tillsync.sync_client.time.sleep', sleeps.append)
        client = SyncClient('http://ledger.local', max_retries=3, retry_delay=2)
        monkeypatch.setattr(client.session, 'post', MockPost(
            MockResponse(502), MockResponse(502), MockResponse(502),
        ))

        with pytest.raises(TransientNetworkError):
            client.ingest_transaction({'external_id': 'a'})

        assert sleeps == [2, 4]

    def test_sync_batch(self, monkeypatch):
        post = MockPost(MockResponse(200, {'synced': 2, 'failed': 0, 'results': []}))
        monkeypatch.setattr(self.client.session, 'post', post)

        result = self.client.sync_batch([{'external_id': 'a'}, {'external_id': 'b'}])

        assert result['success']
        assert result['synced'] == 2
        assert post.calls[0]['url'] == 'http://ledger.local/api/transactions/batch'

    def test_check_health(self, monkeypatch):
        monkeypatch.setattr(self.client.session, 'get', lambda url, timeout=None: MockResponse(200, {}))
        assert self.client.check_health()

        def down(url, timeout=None):
            raise requests.exceptions.ConnectionError('refused')

        monkeypatch.setattr(self.client.session, 'get', down)
        assert not self.client.check_health()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
