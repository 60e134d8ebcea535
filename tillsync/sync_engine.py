# Sync Engine - replays the offline queue against the TillSync ledger
# Per-entry classification; processed entries leave the queue once, after the whole pass

import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests

from .errors import TransientNetworkError
from .transaction_queue import KeyValueStore, LocalTransactionQueue

logger = logging.getLogger(__name__)

ACKNOWLEDGED = 'acknowledged'
DUPLICATE = 'duplicate'
REJECTED = 'rejected'
RETAINED = 'retained'


@dataclass
class SyncReport:
    """Outcome of one sync pass"""
    started_at: str
    finished_at: Optional[str] = None
    attempted: int = 0
    acknowledged: int = 0
    duplicates: int = 0
    rejected: int = 0
    retained: int = 0
    rejections: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def removed(self) -> int:
        return self.acknowledged + self.duplicates + self.rejected

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SyncEngine:
    """Drains the local queue through a sync client"""

    def __init__(self, queue: LocalTransactionQueue, sync_client, storage: KeyValueStore = None):
        self.queue = queue
        self.sync_client = sync_client
        self.storage = storage or queue.storage
        self.last_sync_time = self.storage.load_state('last_sync_time', None)

    def sync_all(self) -> SyncReport:
        """Submit every queued entry once, in enqueue order."""
        report = SyncReport(started_at=datetime.now().isoformat())
        pending = self.queue.drain()

        if not pending:
            report.finished_at = datetime.now().isoformat()
            return report

        logger.info(f"Syncing {len(pending)} pending transactions")
        processed = []
        for entry in pending:
            report.attempted += 1
            verdict = self._submit(entry, report)
            if verdict == RETAINED:
                report.retained += 1
            else:
                processed.append(entry)

        # Sales queued while the pass was running are left in place
        self.queue.remove_entries(processed)

        report.finished_at = datetime.now().isoformat()
        self.last_sync_time = report.finished_at
        self.storage.save_state('last_sync_time', self.last_sync_time)
        self.storage.save_state('last_sync_report', report.to_dict())

        logger.info(
            f"Sync finished: {report.acknowledged} synced, {report.duplicates} duplicate, "
            f"{report.rejected} rejected, {report.retained} still pending"
        )
        return report

    def _submit(self, entry: Dict[str, Any], report: SyncReport) -> str:
        """Send one entry and record its classification. Never raises for a single entry."""
        external_id = entry.get('external_id')
        payload = {k: v for k, v in entry.items() if k != 'queued_at'}
        try:
            result = self.sync_client.ingest_transaction(payload)
        except (TransientNetworkError, requests.RequestException, OSError) as e:
            logger.warning(f"Sync of {external_id} failed, will retry later: {e}")
            return RETAINED
        except sqlite3.Error as e:
            # In-process ledger storage trouble is as temporary as a network blip
            logger.warning(f"Ledger storage error for {external_id}, will retry later: {e}")
            return RETAINED

        if result.get('success'):
            if result.get('duplicate'):
                report.duplicates += 1
                return DUPLICATE
            report.acknowledged += 1
            return ACKNOWLEDGED

        report.rejected += 1
        report.rejections.append({'external_id': external_id, 'reason': result.get('error')})
        logger.error(f"Transaction {external_id} rejected by ledger and dropped: {result.get('error')}")
        return REJECTED

    def get_status(self) -> Dict[str, Any]:
        return {
            'last_sync_time': self.last_sync_time,
            'pending_transactions': self.queue.pending_count(),
            'last_sync_report': self.storage.load_state('last_sync_report', None),
        }
