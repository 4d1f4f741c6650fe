"""
Durable relay state for the Teleport Relayer.

This module persists chain cursors, the processed-event ledger, in-flight
relays and dead letters in a single sqlitedict file, so a restarted relayer
resumes exactly where the previous process stopped.
"""

import logging
import threading
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from sqlitedict import SqliteDict

from ..models import DeadLetter, LockEvent

logger = logging.getLogger(__name__)


class RelayStateStore:
    """
    Namespaced key-value store backed by sqlitedict.

    Keys:
        cursor:<chain_id>          -> last scanned block
        processed:<event_id>       -> unix time of the confirmed mint
        pending:<event_id>         -> {"event": LockEvent dict, "stage": "mint" | "reward"}
        dead:<event_id>:<kind>     -> DeadLetter dict
    """

    CURSOR = "cursor"
    PROCESSED = "processed"
    PENDING = "pending"
    DEAD = "dead"

    def __init__(self, path: str | Path):
        """
        Open (or create) the state file.

        Args:
            path: sqlite file location; parent directories are created
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        # autocommit=True -> writes are flushed on setitem
        self._db = SqliteDict(str(self.path), tablename="relayer", autocommit=True)
        self._closed = False
        logger.info(f"Opened relay state at {self.path}")

    @staticmethod
    def _key(namespace: str, *parts: Any) -> str:
        return ":".join([namespace, *(str(part) for part in parts)])

    def _iter_namespace(self, namespace: str) -> Iterator[tuple[str, Any]]:
        prefix = namespace + ":"
        with self._lock:
            items = [(k, v) for k, v in self._db.items() if k.startswith(prefix)]
        for key, value in items:
            yield key[len(prefix):], value

    # ---- Cursors ----------------------------------------------------------

    def load_cursor(self, chain_id: int) -> int | None:
        with self._lock:
            value = self._db.get(self._key(self.CURSOR, chain_id))
        return int(value) if value is not None else None

    def save_cursor(self, chain_id: int, block_number: int) -> None:
        key = self._key(self.CURSOR, chain_id)
        with self._lock:
            current = self._db.get(key)
            if current is not None and block_number < current:
                raise ValueError(
                    f"Refusing to rewind cursor for chain {chain_id} from {current} to {block_number}"
                )
            self._db[key] = block_number

    # ---- Processed events -------------------------------------------------

    def is_processed(self, event_id: str) -> bool:
        with self._lock:
            return self._key(self.PROCESSED, event_id) in self._db

    def add_processed(self, event_id: str) -> bool:
        """Insert if absent. Returns False when the id was already present."""
        key = self._key(self.PROCESSED, event_id)
        with self._lock:
            if key in self._db:
                return False
            self._db[key] = time.time()
            return True

    def processed_count(self) -> int:
        return sum(1 for _ in self._iter_namespace(self.PROCESSED))

    # ---- Pending relays ---------------------------------------------------

    def add_pending(self, event: LockEvent, stage: str = "mint") -> None:
        with self._lock:
            self._db[self._key(self.PENDING, event.event_id)] = {
                "event": event.to_dict(),
                "stage": stage,
            }

    def is_pending(self, event_id: str) -> bool:
        with self._lock:
            return self._key(self.PENDING, event_id) in self._db

    def set_pending_stage(self, event_id: str, stage: str) -> None:
        key = self._key(self.PENDING, event_id)
        with self._lock:
            record = self._db.get(key)
            if record is None:
                logger.warning(f"No pending relay for {event_id[:10]}..., cannot set stage {stage}")
                return
            record["stage"] = stage
            self._db[key] = record

    def remove_pending(self, event_id: str) -> None:
        key = self._key(self.PENDING, event_id)
        with self._lock:
            if key in self._db:
                del self._db[key]

    def iter_pending(self) -> Iterator[tuple[LockEvent, str]]:
        """Yield (event, stage) for every unfinished relay, oldest block first."""
        records = [record for _, record in self._iter_namespace(self.PENDING)]
        records.sort(key=lambda r: (r["event"]["source_chain_id"],
                                    r["event"]["block_number"],
                                    r["event"]["log_index"]))
        for record in records:
            yield LockEvent.from_dict(record["event"]), record["stage"]

    def pending_count(self) -> int:
        return sum(1 for _ in self._iter_namespace(self.PENDING))

    # ---- Dead letters -----------------------------------------------------

    def add_dead_letter(self, event_id: str, kind: str, reason: str) -> DeadLetter:
        letter = DeadLetter(event_id=event_id, kind=kind, reason=reason, recorded_at=time.time())
        with self._lock:
            self._db[self._key(self.DEAD, event_id, kind)] = {
                "event_id": letter.event_id,
                "kind": letter.kind,
                "reason": letter.reason,
                "recorded_at": letter.recorded_at,
            }
        return letter

    def iter_dead_letters(self) -> Iterator[DeadLetter]:
        for _, raw in self._iter_namespace(self.DEAD):
            yield DeadLetter(**raw)

    def dead_letter_count(self) -> int:
        return sum(1 for _ in self._iter_namespace(self.DEAD))

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._db.close()
            self._closed = True


class ProcessedEventLedger:
    """
    Set of EventIds whose mint has been confirmed on the destination chain.

    Only the mint-success callback writes to it; everything else reads.
    """

    def __init__(self, store: RelayStateStore):
        self._store = store
        self._lock = threading.Lock()

    def has_processed(self, event_id: str) -> bool:
        return self._store.is_processed(event_id)

    def mark_processed(self, event_id: str) -> bool:
        """
        Record a confirmed mint.

        Returns:
            True if the id was newly recorded, False if it was already present
        """
        with self._lock:
            inserted = self._store.add_processed(event_id)
        if not inserted:
            logger.warning(f"Event {event_id[:10]}... was already marked processed")
        return inserted

    def __len__(self) -> int:
        return self._store.processed_count()
