"""Dataclasses for stored rows and aggregator payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

FREQUENCIES = ('weekly', 'fortnightly', 'monthly', 'yearly', 'custom')
CYCLE_TYPES = ('weekly', 'fortnightly', 'monthly')
BUCKET_TYPES = ('spending', 'savings')

STATUS_PENDING = 'pending'
STATUS_CONFIRMED = 'confirmed'


@dataclass
class Account:
    id: int
    user_id: str
    external_id: str
    name: str
    institution: Optional[str] = None
    account_type: Optional[str] = None
    balance_current: Optional[float] = None
    balance_available: Optional[float] = None
    currency: str = 'NZD'
    status: Optional[str] = None
    connection_logo: Optional[str] = None
    last_refreshed_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    first_sync_completed_at: Optional[datetime] = None
    connection_error: Optional[str] = None


@dataclass
class Transaction:
    id: int
    amount: float
    date: date
    account_id: Optional[int] = None
    user_id: Optional[str] = None
    external_id: Optional[str] = None
    merchant: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    balance: Optional[float] = None
    transaction_type: Optional[str] = None
    status: str = STATUS_CONFIRMED
    is_manual: bool = False
    is_amended: bool = False
    matched_schedule_id: Optional[int] = None
    allocations: List['Allocation'] = field(default_factory=list)


@dataclass
class Allocation:
    id: int
    transaction_id: int
    bucket_id: int
    amount: float


@dataclass
class ScheduledTransaction:
    id: int
    user_id: str
    bucket_id: int
    name: str
    amount: float
    frequency: str
    interval: int
    start_date: date
    next_due: date
    enabled: bool = True


@dataclass
class CategorizationRule:
    id: int
    user_id: str
    merchant_pattern: str
    bucket_id: int


@dataclass
class BudgetCycleConfig:
    """Cycle type plus its anchor (day-of-week 0-6 or day-of-month 1-31)."""
    cycle_type: str = 'fortnightly'
    start_day: int = 4


@dataclass
class AggregatorAccount:
    external_id: str
    name: str
    institution: Optional[str] = None
    account_type: Optional[str] = None
    balance_current: Optional[float] = None
    balance_available: Optional[float] = None
    currency: str = 'NZD'
    status: Optional[str] = None
    logo: Optional[str] = None


@dataclass
class AggregatorTransaction:
    external_id: str
    external_account_id: str
    date: date
    description: str
    amount: float
    merchant: Optional[str] = None
    category: Optional[str] = None
    balance: Optional[float] = None
    transaction_type: Optional[str] = None


@dataclass
class AggregatorPendingTransaction:
    external_account_id: str
    date: date
    description: str
    amount: float
    transaction_type: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class SyncResult:
    new_count: int = 0
    promoted_count: int = 0
    amended_count: int = 0
    matched_count: int = 0
    categorized_count: int = 0

    @property
    def updated_count(self) -> int:
        return self.promoted_count + self.amended_count

    def as_dict(self) -> Dict[str, Any]:
        return {
            'new_count': self.new_count,
            'updated_count': self.updated_count,
            'promoted_count': self.promoted_count,
            'amended_count': self.amended_count,
            'matched_count': self.matched_count,
            'categorized_count': self.categorized_count,
        }


@dataclass
class PendingSyncResult:
    new_count: int = 0
    deleted_count: int = 0
