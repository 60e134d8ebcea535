# Sync Client - REST API client for the TillSync ledger
# Submits queued till transactions to the store server

import requests
import logging
import time
from typing import Any, Dict, List

from .errors import TransientNetworkError

logger = logging.getLogger(__name__)


class SyncClient:
    """REST API client for submitting transactions to the ledger"""

    def __init__(self, base_url: str, api_key: str = None, timeout: int = 30,
                 transactions_path: str = '/api/transactions',
                 max_retries: int = 3, retry_delay: float = 5):
        self.base_url = base_url.rstrip('/')
        self.transactions_path = transactions_path if transactions_path.startswith('/') else '/' + transactions_path
        self.api_key = api_key
        self.timeout = timeout
        self.session = requests.Session()

        if api_key:
            self.session.headers.update({'Authorization': f'Bearer {api_key}'})

        self.session.headers.update({
            'Content-Type': 'application/json',
            'User-Agent': 'TillSync-Client/1.0'
        })

        # Retry settings
        self.max_retries = max(1, int(max_retries))
        self.retry_delay = retry_delay  # seconds

    def ingest_transaction(self, transaction: Dict) -> Dict[str, Any]:
        """Submit one transaction.

        Returns {'success', 'duplicate', 'status', ...} when the server answered
        with a verdict. Raises TransientNetworkError when it never did.
        """
        endpoint = f"{self.base_url}{self.transactions_path}"
        external_id = transaction.get('external_id')
        last_error = None

        for attempt in range(self.max_retries):
            try:
                response = self.session.post(
                    endpoint,
                    json=transaction,
                    timeout=self.timeout
                )

                if response.status_code in (200, 201):
                    body = _json_body(response)
                    duplicate = bool(body.get('duplicate'))
                    if duplicate:
                        logger.info(f"Transaction {external_id} already on server (duplicate)")
                    else:
                        logger.info(f"Transaction {external_id} synced successfully")
                    return {
                        'success': True,
                        'duplicate': duplicate,
                        'status': body.get('status', 'duplicate' if duplicate else 'accepted'),
                        'transaction_id': body.get('transaction_id'),
                        'status_code': response.status_code,
                    }

                elif response.status_code in (400, 422):
                    # Rejected by validation - resending will not help
                    body = _json_body(response)
                    reason = body.get('reason') or body.get('message') or response.text
                    logger.error(f"Transaction {external_id} rejected: {reason}")
                    return {
                        'success': False,
                        'duplicate': False,
                        'status': 'rejected',
                        'error': reason,
                        'status_code': response.status_code,
                    }

                elif response.status_code in (401, 403):
                    # Credentials problem, not this transaction's fault; keep it queued
                    logger.error("Authentication failed - check API key")
                    raise TransientNetworkError(f"Authentication failed ({response.status_code})")

                else:
                    last_error = f"Server error {response.status_code}"
                    logger.warning(f"Server error {response.status_code}, retry {attempt + 1}/{self.max_retries}")

            except requests.exceptions.Timeout:
                last_error = 'Timeout'
                logger.warning(f"Timeout, retry {attempt + 1}/{self.max_retries}")

            except requests.exceptions.ConnectionError as e:
                last_error = f"Connection error: {e}"
                logger.warning(f"Connection error, retry {attempt + 1}/{self.max_retries}")

            except requests.exceptions.RequestException as e:
                raise TransientNetworkError(str(e))

            if attempt < self.max_retries - 1:
                time.sleep(self.retry_delay * (attempt + 1))

        raise TransientNetworkError(f"Max retries exceeded for {external_id}: {last_error}")

    def sync_batch(self, transactions: List[Dict]) -> Dict[str, Any]:
        """Submit several transactions in one call; same effect as one ingest per entry"""
        endpoint = f"{self.base_url}{self.transactions_path}/batch"

        try:
            response = self.session.post(
                endpoint,
                json={'transactions': transactions},
                timeout=self.timeout * 2
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Batch sync error: {e}")
            raise TransientNetworkError(str(e))

        if response.status_code == 200:
            result = _json_body(response)
            logger.info(f"Batch sync: {result.get('synced', 0)}/{len(transactions)} applied")
            return {
                'success': True,
                'synced': result.get('synced', 0),
                'failed': result.get('failed', 0),
                'results': result.get('results', []),
            }
        if response.status_code >= 500:
            raise TransientNetworkError(f"Server error {response.status_code}")
        return {
            'success': False,
            'error': response.text,
            'status_code': response.status_code
        }

    def get_till(self, till_id: str) -> Dict[str, Any]:
        try:
            response = self.session.get(f"{self.base_url}/api/till/{till_id}", timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise TransientNetworkError(str(e))
        if response.status_code >= 500:
            raise TransientNetworkError(f"Server error {response.status_code}")
        return _json_body(response)

    def refund(self, transaction_id: str, reason: str = None, staff_id: str = None) -> Dict[str, Any]:
        payload = {
            'transaction_id': transaction_id,
            'action': 'process',
            'refund_reason': reason,
            'staff_id': staff_id,
        }
        try:
            response = self.session.post(
                f"{self.base_url}{self.transactions_path}/refund",
                json=payload,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise TransientNetworkError(str(e))
        if response.status_code >= 500:
            raise TransientNetworkError(f"Server error {response.status_code}")
        return _json_body(response)

    def check_health(self) -> bool:
        """Check if server is reachable"""
        try:
            response = self.session.get(
                f"{self.base_url}/api/health",
                timeout=5
            )
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False

    def get_status(self) -> Dict:
        """Get client status"""
        return {
            'base_url': self.base_url,
            'connected': self.check_health(),
            'max_retries': self.max_retries
        }


class LocalLedgerClient:
    """In-process client for a till running on the same box as the ledger (and for tests)"""

    def __init__(self, api):
        self.api = api

    def ingest_transaction(self, transaction: Dict) -> Dict[str, Any]:
        status_code, body = self.api.ingest_transaction(transaction)
        if status_code >= 500:
            raise TransientNetworkError(body.get('error', 'Ledger error'))
        return {
            'success': body.get('success', False),
            'duplicate': body.get('duplicate', False),
            'status': body.get('status'),
            'transaction_id': body.get('transaction_id'),
            'error': body.get('reason'),
            'status_code': status_code,
        }

    def sync_batch(self, transactions: List[Dict]) -> Dict[str, Any]:
        status_code, body = self.api.sync_batch({'transactions': transactions})
        return dict(body, success=status_code == 200)

    def check_health(self) -> bool:
        return True


def _json_body(response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}
