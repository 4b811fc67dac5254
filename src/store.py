"""
In-memory shared state store for participant requests.

Stands in for the document database the devices share. Semantics:
- create/update/delete on request-shaped records
- subscribe(id): callback with the full record once immediately and on
  every change; None once the record is deleted
- subscribe_session(session_id): callback with the full list of the
  session's records on every change
- Notifications are delivered asynchronously on the event loop (optional
  latency), never inline with the write, so readers are eventually
  consistent with writers.
"""

import asyncio
import copy
import uuid
from typing import Any, Callable, Dict, List, Optional

from comms import EventSink, NullEventSink
from records import RecordNotFoundError, Status, StoreWriteError, status_fields

RecordCallback = Callable[[Optional[Dict[str, Any]]], None]
SessionCallback = Callable[[List[Dict[str, Any]]], None]


class SharedStateStore:
    """
    Subscribable key-value store of ParticipantRequest records.

    Write failures raise StoreWriteError to the caller; they are logged
    here and never swallowed.
    """

    def __init__(self, latency_s: float = 0.0, sink: Optional[EventSink] = None):
        """
        Args:
            latency_s: Delay before subscribers observe a change
            sink: Event sink for write diagnostics
        """
        self.latency_s = latency_s
        self.sink = sink or NullEventSink()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._record_subs: Dict[str, List[RecordCallback]] = {}
        self._session_subs: Dict[str, List[SessionCallback]] = {}
        self._fail_writes = 0
        self.write_count = 0

    # ------------------------------------------------------------------ writes

    def fail_next_writes(self, count: int = 1) -> None:
        """Make the next `count` writes raise StoreWriteError."""
        self._fail_writes = count

    def _check_write(self, op: str, record_id: str) -> None:
        if self._fail_writes > 0:
            self._fail_writes -= 1
            self.sink.error("store", f"Failed to {op} {record_id[:8]}: injected failure")
            raise StoreWriteError(f"{op} {record_id} failed")

    async def create(self, record: Dict[str, Any]) -> str:
        """Insert a record; assigns an id when the record has none."""
        record = copy.deepcopy(record)
        record_id = record.get("id") or uuid.uuid4().hex
        record["id"] = record_id
        self._check_write("create", record_id)
        self._records[record_id] = record
        self.write_count += 1
        self.sink.debug("store", f"Created {record_id[:8]} ({record.get('status')})")
        self._notify(record_id, record.get("sessionId"))
        return record_id

    async def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        """
        Merge fields into an existing record.

        Raises:
            RecordNotFoundError: The record was deleted
            StoreWriteError: The write failed
        """
        self._check_write("update", record_id)
        record = self._records.get(record_id)
        if record is None:
            self.sink.error("store", f"Failed to update {record_id[:8]}: record not found")
            raise RecordNotFoundError(f"record {record_id} not found")
        record.update(copy.deepcopy(fields))
        self.write_count += 1
        detected = fields.get("detectedPattern")
        suffix = f" (with {len(detected)} peaks)" if detected else ""
        self.sink.debug("store", f"Queue {record_id[:8]} -> {fields.get('status', '-')}{suffix}")
        self._notify(record_id, record.get("sessionId"))

    async def transition(self, record_id: str, new: Status, **extra: Any) -> Dict[str, Any]:
        """
        Move a record along the handshake graph.

        The edge is checked against the record's current status and written
        without yielding in between.

        Raises:
            RecordNotFoundError: The record was deleted
            InvalidTransitionError: current -> new is not an allowed edge
        """
        record = self._records.get(record_id)
        if record is None:
            self.sink.error("store", f"Failed to move {record_id[:8]} to {new.value}: record not found")
            raise RecordNotFoundError(f"record {record_id} not found")
        fields = status_fields(Status(record["status"]), new, **extra)
        await self.update(record_id, fields)
        return fields

    async def delete(self, record_id: str) -> None:
        """Remove a record. Deleting a missing record is a no-op."""
        self._check_write("delete", record_id)
        record = self._records.pop(record_id, None)
        if record is None:
            return
        self.write_count += 1
        self.sink.debug("store", f"Deleted {record_id[:8]}")
        self._notify(record_id, record.get("sessionId"))

    # ------------------------------------------------------------------- reads

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    def list(self, session_id: str) -> List[Dict[str, Any]]:
        """Records of one session, oldest first."""
        rows = [r for r in self._records.values() if r.get("sessionId") == session_id]
        rows.sort(key=lambda r: r.get("createdAt", 0.0))
        return copy.deepcopy(rows)

    # ----------------------------------------------------------- subscriptions

    def subscribe(self, record_id: str, callback: RecordCallback) -> Callable[[], None]:
        """Watch one record. Returns an unsubscribe function."""
        self._record_subs.setdefault(record_id, []).append(callback)
        self._deliver(callback, record_id)

        def unsubscribe() -> None:
            subs = self._record_subs.get(record_id, [])
            if callback in subs:
                subs.remove(callback)

        return unsubscribe

    def subscribe_session(self, session_id: str, callback: SessionCallback) -> Callable[[], None]:
        """Watch every record of a session. Returns an unsubscribe function."""
        self._session_subs.setdefault(session_id, []).append(callback)
        self._deliver_session(callback, session_id)

        def unsubscribe() -> None:
            subs = self._session_subs.get(session_id, [])
            if callback in subs:
                subs.remove(callback)

        return unsubscribe

    def _schedule(self, fn: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        if self.latency_s > 0:
            loop.call_later(self.latency_s, fn)
        else:
            loop.call_soon(fn)

    def _deliver(self, callback: RecordCallback, record_id: str) -> None:
        def fire() -> None:
            # Re-check membership: the subscriber may have left meanwhile.
            if callback in self._record_subs.get(record_id, []):
                callback(self.get(record_id))
        self._schedule(fire)

    def _deliver_session(self, callback: SessionCallback, session_id: str) -> None:
        def fire() -> None:
            if callback in self._session_subs.get(session_id, []):
                callback(self.list(session_id))
        self._schedule(fire)

    def _notify(self, record_id: str, session_id: Optional[str]) -> None:
        for callback in list(self._record_subs.get(record_id, [])):
            self._deliver(callback, record_id)
        if session_id is not None:
            for callback in list(self._session_subs.get(session_id, [])):
                self._deliver_session(callback, session_id)
