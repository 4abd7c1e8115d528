# voteguard/notifications/dispatcher.py

# Fire-and-forget delivery of secret codes and vote receipts to voters.
# Delivery happens on a background worker; a failed delivery is logged and
# never undoes the code issuance or vote that produced it.

import logging
import threading
import time
from datetime import datetime
from queue import Empty, Full, Queue
from typing import Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    def __init__(self,
                 webhook_url: Optional[str] = None,
                 timeout: float = 5.0,
                 max_queue_size: int = 10000,
                 batch_size: int = 50,
                 start_worker: bool = True,
                 session: Optional[requests.Session] = None):
        """
        Args:
            webhook_url: endpoint receiving JSON notifications; None logs only
            timeout: per-request timeout in seconds
            max_queue_size: notifications held before new ones are dropped
            batch_size: notifications handled per worker pass
            start_worker: False leaves draining to process_pending()
            session: requests session to post with
        """
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.batch_size = batch_size
        self.session = session or requests.Session()
        self.queue: Queue = Queue(maxsize=max_queue_size)

        self.metrics = {
            "queued": 0,
            "delivered": 0,
            "failed": 0,
            "dropped": 0,
            "last_delivery_time": None,
        }

        self.running = False
        self.worker = None
        if start_worker:
            self.running = True
            self.worker = threading.Thread(target=self._process_queue, name='notification-dispatcher')
            self.worker.daemon = True
            self.worker.start()

    def _enqueue(self, kind: str, voter_id: str, payload: Dict) -> bool:
        message = {
            "type": kind,
            "voter_id": voter_id,
            "created_at": datetime.utcnow().isoformat(),
            "payload": payload,
        }
        try:
            self.queue.put_nowait(message)
        except Full:
            logger.warning(f"Notification queue full - dropping {kind} for voter {voter_id}")
            self.metrics["dropped"] += 1
            return False
        self.metrics["queued"] += 1
        return True

    def deliver_code(self, voter_id: str, election_id: str, plaintext_code: str) -> bool:
        return self._enqueue("SECRET_CODE", voter_id, {"election_id": election_id, "code": plaintext_code})

    def deliver_receipt(self, voter_id: str, election_id: str, receipt: Dict) -> bool:
        return self._enqueue("VOTE_RECEIPT", voter_id, dict(receipt, election_id=election_id))

    def _send(self, message: Dict) -> bool:
        if not self.webhook_url:
            # Codes are never written to the log
            logger.info(f"Notification {message['type']} for voter {message['voter_id']} (no webhook configured)")
            return True
        try:
            response = self.session.post(self.webhook_url, json=message, timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"Notification {message['type']} for voter {message['voter_id']} failed: {e}")
            return False

    def _drain(self, limit: int) -> List[Dict]:
        messages = []
        while len(messages) < limit:
            try:
                messages.append(self.queue.get_nowait())
            except Empty:
                break
        return messages

    def process_pending(self) -> int:
        """Deliver everything currently queued. Returns the number delivered."""
        delivered = 0
        while True:
            batch = self._drain(self.batch_size)
            if not batch:
                return delivered
            for message in batch:
                if self._send(message):
                    delivered += 1
                    self.metrics["delivered"] += 1
                else:
                    self.metrics["failed"] += 1
            self.metrics["last_delivery_time"] = datetime.utcnow()

    def _process_queue(self):
        while self.running:
            try:
                self.process_pending()
                time.sleep(0.1)  # Prevent tight loop
            except Exception as e:
                logger.error(f"Error processing notification queue: {str(e)}")
                time.sleep(1)  # Back off on error

    def get_metrics(self) -> Dict:
        return dict(self.metrics, queue_size=self.queue.qsize())

    def shutdown(self):
        self.running = False
        if self.worker is not None:
            self.worker.join(timeout=5.0)
        self.process_pending()
