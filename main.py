#!/usr/bin/env python3
"""
TillSync - store ledger server and offline-first till agent

    python main.py server   # ledger reconciliation API (default)
    python main.py till     # till agent: local queue, sync on reconnect, receipts
"""

import json
import logging
import sys
import uuid
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse

from tillsync.api import LedgerAPI
from tillsync.config import load_config
from tillsync.connectivity import ConnectivityMonitor
from tillsync.errors import TillSyncError
from tillsync.ledger import LedgerService, create_store
from tillsync.logging_config import setup_logging_from_config
from tillsync.printer_transport import PrinterTransport
from tillsync.receipt import ReceiptSettings, build_receipt
from tillsync.refunds import RefundCompensator
from tillsync.sync_client import LocalLedgerClient, SyncClient
from tillsync.sync_engine import SyncEngine
from tillsync.transaction_queue import KeyValueStore, LocalTransactionQueue

logger = logging.getLogger(__name__)


def build_ledger_api(config) -> LedgerAPI:
    ledger = LedgerService(create_store(config.get('ledger_db_path')))
    return LedgerAPI(ledger, RefundCompensator(ledger))


class TillAgent:
    """Client side of a till: records sales offline and replays them when online"""

    def __init__(self, config, sync_client=None):
        self.config = config
        self.storage = KeyValueStore(config.get('db_path'))
        self.queue = LocalTransactionQueue(self.storage)

        if sync_client is not None:
            self.sync_client = sync_client
        elif config.get('server_url'):
            self.sync_client = SyncClient(
                config['server_url'],
                api_key=config.get('api_key'),
                timeout=config.get('request_timeout', 30),
                transactions_path=config.get('transactions_path', '/api/transactions'),
                max_retries=config.get('max_retries', 3),
                retry_delay=config.get('retry_delay', 5),
            )
        else:
            # No server configured: reconcile against a ledger on this machine
            logger.warning("No server_url configured - using in-process ledger")
            self.sync_client = LocalLedgerClient(build_ledger_api(config))

        self.sync_engine = SyncEngine(self.queue, self.sync_client, self.storage)
        self.monitor = ConnectivityMonitor(self.sync_engine, health_check=self.sync_client.check_health)
        self.printer = PrinterTransport(timeout=config.get('printer_timeout', 5))
        self.receipt_settings = ReceiptSettings.from_config(config)

    def start(self):
        logger.info(f"Till agent starting - {self.queue.pending_count()} transactions pending")
        self.monitor.start(self.config.get('health_check_interval', 15))

    def stop(self):
        self.monitor.stop()
        self.storage.save_state('pending_on_shutdown', self.queue.pending_count())
        logger.info(f"Shutdown: {self.queue.pending_count()} transactions pending sync")

    def record_sale(self, transaction: dict) -> dict:
        """Queue a sale locally first; printing and syncing must never lose it."""
        transaction = dict(transaction)
        transaction.setdefault('external_id', uuid.uuid4().hex)
        transaction.setdefault('created_at', datetime.now().isoformat())
        transaction.setdefault('source', 'till')
        self.queue.enqueue(transaction)

        printed = None
        destination = self.config.get('printer_destination')
        if destination:
            try:
                data = build_receipt(transaction, self.receipt_settings)
            except (ValueError, TillSyncError) as e:
                logger.error(f"Could not render receipt for {transaction['external_id']}: {e}")
            else:
                printed = self.printer.send(data, destination).to_dict()

        if self.monitor.is_online:
            self.monitor.trigger_sync()
        return {
            'external_id': transaction['external_id'],
            'pending': self.queue.pending_count(),
            'printed': printed,
        }

    def get_status(self) -> dict:
        status = self.monitor.get_status()
        status['last_sync_time'] = self.sync_engine.last_sync_time
        status['last_sync_report'] = self.storage.load_state('last_sync_report', None)
        return status


class JSONHandler(BaseHTTPRequestHandler):
    """Shared JSON plumbing for both server modes"""

    def _read_json(self):
        length = int(self.headers.get('Content-Length') or 0)
        raw = self.rfile.read(length) if length else b''
        if not raw:
            return {}
        return json.loads(raw.decode('utf-8'))

    def _send_json(self, status_code: int, body):
        payload = json.dumps(body).encode('utf-8')
        self.send_response(status_code)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format, *args):
        logger.debug("%s - %s", self.address_string(), format % args)


class LedgerHandler(JSONHandler):
    api: LedgerAPI = None

    def do_GET(self):
        path = urlparse(self.path).path.rstrip('/')
        if path == '/api/health':
            self._send_json(*self.api.health())
        elif path.startswith('/api/till/'):
            self._send_json(*self.api.get_till(path[len('/api/till/'):]))
        else:
            self._send_json(404, {'success': False, 'error': 'Not found'})

    def do_POST(self):
        path = urlparse(self.path).path.rstrip('/')
        routes = {
            '/api/transactions': self.api.ingest_transaction,
            '/api/transactions/batch': self.api.sync_batch,
            '/api/transactions/refund': self.api.refund,
            '/api/transactions/complete': self.api.complete_transaction,
            '/api/till/open': self.api.open_till,
            '/api/till/close': self.api.close_till,
        }
        handler = routes.get(path)
        if handler is None:
            self._send_json(404, {'success': False, 'error': 'Not found'})
            return
        try:
            body = self._read_json()
        except ValueError:
            self._send_json(400, {'success': False, 'error': 'Invalid JSON body'})
            return
        self._send_json(*handler(body))

    def do_PUT(self):
        path = urlparse(self.path).path.rstrip('/')
        prefix, suffix = '/api/till/', '/adjust-float'
        if not (path.startswith(prefix) and path.endswith(suffix)):
            self._send_json(404, {'success': False, 'error': 'Not found'})
            return
        till_id = path[len(prefix):-len(suffix)]
        try:
            body = self._read_json()
        except ValueError:
            self._send_json(400, {'success': False, 'error': 'Invalid JSON body'})
            return
        self._send_json(*self.api.adjust_float(till_id, body))


class TillHandler(JSONHandler):
    agent: TillAgent = None

    def do_GET(self):
        if urlparse(self.path).path.rstrip('/') == '/status':
            self._send_json(200, self.agent.get_status())
        else:
            self._send_json(404, {'success': False, 'error': 'Not found'})

    def do_POST(self):
        path = urlparse(self.path).path.rstrip('/')
        if path == '/sale':
            try:
                body = self._read_json()
            except ValueError:
                self._send_json(400, {'success': False, 'error': 'Invalid JSON body'})
                return
            if not isinstance(body, dict):
                self._send_json(400, {'success': False, 'error': 'Sale must be a JSON object'})
                return
            self._send_json(202, self.agent.record_sale(body))
        elif path == '/sync':
            report = self.agent.monitor.trigger_sync()
            if report is None:
                self._send_json(409, {'success': False, 'error': 'Sync already in progress'})
            else:
                self._send_json(200, report.to_dict())
        else:
            self._send_json(404, {'success': False, 'error': 'Not found'})


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    mode = argv[0] if argv else 'server'

    config = load_config()
    setup_logging_from_config(config)

    port = int(config.get('http_port', 8080))
    agent = None
    if mode == 'server':
        LedgerHandler.api = build_ledger_api(config)
        server = ThreadingHTTPServer(('', port), LedgerHandler)
        title = 'TillSync Ledger Server'
    elif mode == 'till':
        agent = TillAgent(config)
        agent.start()
        TillHandler.agent = agent
        server = ThreadingHTTPServer(('127.0.0.1', port), TillHandler)
        title = 'TillSync Till Agent'
    else:
        print(f"Unknown mode {mode!r}; use 'server' or 'till'")
        return 2

    print("=" * 50)
    print(f"  {title}")
    print("=" * 50)
    print(f"Listening on http://localhost:{port}")
    print("Logs: logs/tillsync.log")
    print("=" * 50)
    print("Press Ctrl+C to stop")

    try:
        server.serve_forever()
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        server.server_close()
        if agent:
            agent.stop()
    return 0


if __name__ == '__main__':
    sys.exit(main())
