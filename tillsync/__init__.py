# TillSync
# Offline-first till queueing, ledger reconciliation and ESC/POS receipts

__version__ = '0.1.0'

from .escpos_encoder import ESCPOSEncoder, Alignment
from .models import LineItem, Transaction, Till, TenderBreakdown, SinglePayment, SplitPayment, TenderPayment
from .document_store import DocumentStore
from .transaction_queue import KeyValueStore, LocalTransactionQueue
from .ledger import LedgerService, IngestResult, StepOutcome, create_store, recompute
from .refunds import RefundCompensator, RefundResult
from .sync_client import SyncClient, LocalLedgerClient
from .sync_engine import SyncEngine, SyncReport
from .connectivity import ConnectivityMonitor
from .receipt import ReceiptSettings, build_receipt
from .printer_transport import PrinterTransport, PrintResult, parse_destination
from .api import LedgerAPI

__all__ = [
    'ESCPOSEncoder',
    'Alignment',
    'LineItem',
    'Transaction',
    'Till',
    'TenderBreakdown',
    'SinglePayment',
    'SplitPayment',
    'TenderPayment',
    'DocumentStore',
    'KeyValueStore',
    'LocalTransactionQueue',
    'LedgerService',
    'IngestResult',
    'StepOutcome',
    'create_store',
    'recompute',
    'RefundCompensator',
    'RefundResult',
    'SyncClient',
    'LocalLedgerClient',
    'SyncEngine',
    'SyncReport',
    'ConnectivityMonitor',
    'ReceiptSettings',
    'build_receipt',
    'PrinterTransport',
    'PrintResult',
    'parse_destination',
    'LedgerAPI',
]
