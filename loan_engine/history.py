"""
Loan History Module

Hash-chained per-loan history with SHA-256 for tamper detection. Every
balance-affecting event records a before/after snapshot of the loan
aggregates so the trail can be read as a running balance.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord, _to_storable


class LoanHistoryEventType(Enum):
    """Types of loan history events"""
    LOAN_ORIGINATED = "loan_originated"
    PAYMENT_RECORDED = "payment_recorded"
    PAYMENT_DELETED = "payment_deleted"
    CHARGE_ADDED = "charge_added"
    CHARGE_REMOVED = "charge_removed"
    LATE_FEE_WAIVED = "late_fee_waived"
    CAPITAL_PAYMENT_RECORDED = "capital_payment_recorded"
    LOAN_SETTLED = "loan_settled"
    LOAN_RECONCILED = "loan_reconciled"


@dataclass
class LoanHistoryEntry(StorageRecord):
    """
    Immutable loan history entry chained to the previous entry of the same loan
    """
    loan_id: str
    event_type: LoanHistoryEventType
    sequence: int          # position within the loan's chain, starting at 1
    previous_hash: str
    current_hash: str
    old_values: Dict[str, Any] = field(default_factory=dict)
    new_values: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    user_id: Optional[str] = None

    def __post_init__(self):
        self.old_values = _to_storable(self.old_values or {})
        self.new_values = _to_storable(self.new_values or {})

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'loan_id': self.loan_id,
            'event_type': self.event_type.value,
            'sequence': self.sequence,
            'previous_hash': self.previous_hash,
            'old_values': self.old_values,
            'new_values': self.new_values,
            'description': self.description,
            'user_id': self.user_id
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        return self.current_hash == self.calculate_hash()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanHistoryEntry':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['event_type'] = LoanHistoryEventType(data['event_type'])
        return cls(**data)


class LoanHistory:
    """
    Hash-chained history trail, one chain per loan
    """

    def __init__(self, storage: StorageInterface, table_name: str = "loan_history"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()

    def _rows(self, loan_id: str) -> List[Dict[str, Any]]:
        return self.storage.select(self.table_name, {'loan_id': loan_id}, order_by=['sequence'])

    def record(
        self,
        loan_id: str,
        event_type: LoanHistoryEventType,
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        description: str = "",
        user_id: Optional[str] = None
    ) -> LoanHistoryEntry:
        """
        Append an entry to the loan's chain

        Args:
            loan_id: Loan the event belongs to
            event_type: Type of event
            old_values: Aggregate snapshot before the event
            new_values: Aggregate snapshot after the event
            description: Human readable summary
            user_id: Who initiated the action

        Returns:
            Created LoanHistoryEntry
        """
        with self._lock:
            rows = self._rows(loan_id)
            previous_hash = rows[-1]['current_hash'] if rows else ""
            now = datetime.now(timezone.utc)

            entry = LoanHistoryEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                event_type=event_type,
                sequence=len(rows) + 1,
                previous_hash=previous_hash,
                current_hash="",
                old_values=old_values or {},
                new_values=new_values or {},
                description=description,
                user_id=user_id
            )
            entry.current_hash = entry.calculate_hash()

            self.storage.insert(self.table_name, entry.id, entry.to_dict())
            return entry

    def get_entries(
        self,
        loan_id: str,
        event_type: Optional[LoanHistoryEventType] = None
    ) -> List[LoanHistoryEntry]:
        """Entries of a loan in chain order, optionally filtered by type"""
        entries = [LoanHistoryEntry.from_dict(row) for row in self._rows(loan_id)]
        if event_type is not None:
            entries = [e for e in entries if e.event_type == event_type]
        return entries

    def verify_integrity(self, loan_id: str) -> Dict[str, Any]:
        """
        Verify the hash chain of one loan

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self.get_entries(loan_id)
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
