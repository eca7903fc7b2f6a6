import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

from logger_config import setup_logger

logger = setup_logger()

UPLOADING = "uploading"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class UploadProgressRecord:
    upload_id: str
    bytes_received: int = 0
    total_bytes: Optional[int] = None
    status: str = UPLOADING
    updated_at: float = field(default_factory=time.time)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "type": "progress",
            "uploadId": self.upload_id,
            "bytesReceived": self.bytes_received,
            "totalBytes": self.total_bytes,
            "status": self.status,
            "updatedAt": datetime.fromtimestamp(self.updated_at, timezone.utc).isoformat(),
        }


class ProgressTracker:
    """In-memory upload progress keyed by client-chosen upload id.

    Subscribers get a queue holding at most the latest snapshot; a slow
    subscriber skips intermediate updates instead of buffering them.
    """

    def __init__(self, record_ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.record_ttl_seconds = record_ttl_seconds
        self._clock = clock
        self._records: Dict[str, UploadProgressRecord] = {}
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def update(self, upload_id: str, bytes_received: int,
                     total_bytes: Optional[int] = None, status: str = UPLOADING) -> None:
        async with self._lock:
            record = self._records.get(upload_id)
            if record is None:
                record = UploadProgressRecord(upload_id=upload_id)
                self._records[upload_id] = record
            record.bytes_received = bytes_received
            if total_bytes is not None:
                record.total_bytes = total_bytes
            record.status = status
            record.updated_at = self._clock()
            self._publish(upload_id, record.snapshot())

    async def get(self, upload_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._records.get(upload_id)
            return record.snapshot() if record else None

    async def subscribe(self, upload_id: str) -> asyncio.Queue:
        """Register interest in an upload. The current snapshot, if any, is queued at once."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        async with self._lock:
            self._subscribers[upload_id].add(queue)
            record = self._records.get(upload_id)
            if record is not None:
                queue.put_nowait(record.snapshot())
        return queue

    async def unsubscribe(self, upload_id: str, queue: asyncio.Queue) -> None:
        async with self._lock:
            subscribers = self._subscribers.get(upload_id)
            if subscribers is None:
                return
            subscribers.discard(queue)
            if not subscribers:
                del self._subscribers[upload_id]

    async def sweep(self) -> int:
        """Remove records with no update for longer than the TTL."""
        async with self._lock:
            cutoff = self._clock() - self.record_ttl_seconds
            expired = [uid for uid, record in self._records.items() if record.updated_at < cutoff]
            for upload_id in expired:
                del self._records[upload_id]

        if expired:
            logger.info(f"Swept {len(expired)} inactive upload progress records")
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)

    def _publish(self, upload_id: str, snapshot: Dict[str, Any]) -> None:
        for queue in self._subscribers.get(upload_id, ()):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)
