"""
Audit Trail Module

Engine operations describe their decisions as AuditRecords and hand them to
an AuditEmitter supplied by the host. AuditTrail is the emitter shipped with
the engine: an append-only log in which every event carries the SHA-256 of
its predecessor, so edits or deletions in stored history show up on
verification.
"""

import hashlib
import json
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .storage import StorageInterface, StorageRecord


class AuditEventType(Enum):
    """Kinds of decisions the engine records"""
    SCHEDULE_GENERATED = "SCHEDULE_GENERATED"
    PAYMENT_PROCESSED = "PAYMENT_PROCESSED"
    LOAN_REAMORTIZED = "LOAN_REAMORTIZED"
    LOAN_COMPLETED = "LOAN_COMPLETED"
    LOAN_STATUS_CHANGED = "LOAN_STATUS_CHANGED"


@dataclass(frozen=True)
class AuditRecord:
    """A decision produced by the engine, waiting to be emitted"""
    event_kind: AuditEventType
    resource_id: str
    payload: Dict[str, Any]


class AuditEmitter(ABC):
    """Where the engine sends its audit records; implemented by the host"""

    @abstractmethod
    def record(self, event_kind: AuditEventType, resource_id: str,
               payload: Dict[str, Any]) -> None:
        pass

    def emit_all(self, records: Iterable[AuditRecord]) -> None:
        for pending in records:
            self.record(pending.event_kind, pending.resource_id, pending.payload)


def _plain(value: Any) -> Any:
    """Reduce a payload value to JSON types"""
    if isinstance(value, dict):
        return {key: _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _digest(content: Dict[str, Any]) -> str:
    canonical = json.dumps(content, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class AuditEvent(StorageRecord):
    """One link of the audit chain"""
    event_type: AuditEventType
    resource_id: str
    previous_hash: str
    current_hash: str
    payload: Dict[str, Any]

    def __post_init__(self):
        self.payload = _plain(self.payload or {})

    def calculate_hash(self) -> str:
        """SHA-256 over everything that identifies the event except its own hash"""
        return _digest({
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'event_type': self.event_type.value,
            'resource_id': self.resource_id,
            'previous_hash': self.previous_hash,
            'payload': self.payload,
        })

    def verify_hash(self) -> bool:
        return self.calculate_hash() == self.current_hash

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['event_type'] = self.event_type.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuditEvent':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            event_type=AuditEventType(data['event_type']),
            resource_id=data['resource_id'],
            previous_hash=data['previous_hash'],
            current_hash=data['current_hash'],
            payload=data['payload'],
        )


class AuditTrail(AuditEmitter):
    """
    Hash-chained audit log kept in a StorageInterface table.

    Appends are serialized so two threads never chain onto the same
    predecessor. A trail opened on storage that already holds events picks
    the chain up from the last stored hash.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "audit_events"):
        self.storage = storage
        self.table_name = table_name
        self._append_lock = threading.Lock()
        stored = storage.load_all(table_name)
        self._head = stored[-1]['current_hash'] if stored else ""

    def record(self, event_kind: AuditEventType, resource_id: str,
               payload: Dict[str, Any]) -> None:
        self.log_event(event_kind, resource_id, payload)

    def log_event(self, event_type: AuditEventType, resource_id: str,
                  payload: Optional[Dict[str, Any]] = None) -> AuditEvent:
        """
        Append an event and return it

        Args:
            event_type: Kind of decision
            resource_id: Loan the decision is about
            payload: Details; Decimals, dates and enums are stored as strings
        """
        with self._append_lock:
            timestamp = datetime.now(timezone.utc)
            event = AuditEvent(
                id=str(uuid.uuid4()),
                created_at=timestamp,
                updated_at=timestamp,
                event_type=event_type,
                resource_id=resource_id,
                previous_hash=self._head,
                current_hash="",
                payload=payload,
            )
            event.current_hash = event.calculate_hash()
            self.storage.save(self.table_name, event.id, event.to_dict())
            self._head = event.current_hash
        return event

    def get_events(self, resource_id: Optional[str] = None,
                   event_type: Optional[AuditEventType] = None) -> List[AuditEvent]:
        """Stored events in chain order, optionally narrowed to a loan and/or kind"""
        return [
            event
            for event in map(AuditEvent.from_dict, self.storage.load_all(self.table_name))
            if (resource_id is None or event.resource_id == resource_id)
            and (event_type is None or event.event_type == event_type)
        ]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Walk the stored chain and report problems

        ``hash_errors`` lists events whose content no longer matches their
        hash; ``chain_breaks`` lists events whose predecessor link is wrong,
        which is what a deleted or reordered event looks like.
        """
        events = self.get_events()
        hash_errors = []
        chain_breaks = []

        expected_previous = ""
        for position, event in enumerate(events):
            recomputed = event.calculate_hash()
            if recomputed != event.current_hash:
                hash_errors.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_hash': recomputed,
                    'actual_hash': event.current_hash,
                })
            if event.previous_hash != expected_previous:
                chain_breaks.append({
                    'event_id': event.id,
                    'position': position,
                    'expected_previous_hash': expected_previous,
                    'actual_previous_hash': event.previous_hash,
                })
            expected_previous = event.current_hash

        return {
            'valid': not hash_errors and not chain_breaks,
            'total_events': len(events),
            'hash_errors': hash_errors,
            'chain_breaks': chain_breaks,
        }

    def count_events(self) -> int:
        return self.storage.count(self.table_name)
