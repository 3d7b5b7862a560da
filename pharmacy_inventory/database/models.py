"""
Core data models for the pharmacy inventory record store.

Each persisted record family (inventory, users, transactions, access logs) is a
dataclass plus a :class:`RecordFamily` descriptor that knows the CSV file name,
the column headers and how to convert between rows and records. Row parsers
raise ``ValueError`` with a human-readable reason; the record store turns that
into a :class:`~pharmacy_inventory.errors.ValidationError` naming the row.
"""

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple


class StockStatus(Enum):
    """Stock status derived from quantity, safety stock and expiry."""
    ADEQUATE = "adequate"
    LOW = "low"
    CRITICAL = "critical"
    STOCKOUT = "stockout"
    EXPIRED = "expired"


class DrugCategory(Enum):
    """Handling category of a drug."""
    CONTROLLED = "controlled"
    REFRIGERATED = "refrigerated"
    STANDARD = "standard"


class TransactionAction(Enum):
    """Stock movement recorded in the transaction log."""
    USE = "USE"
    RECEIVE = "RECEIVE"
    ADJUSTED = "ADJUSTED"


class UserRole(Enum):
    """User role."""
    NURSE = "Nurse"
    PHARMACIST = "Pharmacist"
    MASTER = "Master"


class UserStatus(Enum):
    """User account status."""
    ACTIVE = "Active"
    BLACKLISTED = "Blacklisted"


@dataclass
class InventoryItem:
    """One batch of a drug at one location."""
    drug_id: str
    drug_name: str
    location: str
    qty_on_hand: int
    expiry_date: date
    batch_lot: str
    safety_stock: int
    avg_daily_use: float

    def __post_init__(self):
        if self.qty_on_hand < 0:
            raise ValueError(f"qty_on_hand cannot be negative: {self.qty_on_hand}")
        if self.safety_stock < 0:
            raise ValueError(f"safety_stock cannot be negative: {self.safety_stock}")
        if not math.isfinite(self.avg_daily_use):
            raise ValueError(f"avg_daily_use must be a finite number: {self.avg_daily_use}")
        if self.avg_daily_use < 0:
            raise ValueError(f"avg_daily_use cannot be negative: {self.avg_daily_use}")

    @property
    def key(self) -> Tuple[str, str, str]:
        """Identity of the record: drug x location x batch."""
        return (self.drug_id, self.location, self.batch_lot)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'drug_id': self.drug_id,
            'drug_name': self.drug_name,
            'location': self.location,
            'qty_on_hand': self.qty_on_hand,
            'expiry_date': self.expiry_date.isoformat(),
            'batch_lot': self.batch_lot,
            'safety_stock': self.safety_stock,
            'avg_daily_use': self.avg_daily_use
        }


@dataclass
class User:
    """User access record."""
    emp_id: str
    role: UserRole
    status: UserStatus
    name: str
    password_hash: str
    unified_group: str
    created_at: str
    last_login: str

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


@dataclass(frozen=True)
class Transaction:
    """Immutable stock movement. ``qty_change`` is negative for USE."""
    txn_id: str
    timestamp: datetime
    user_id: str
    drug_id: str
    action: TransactionAction
    qty_change: int
    details: Optional[str] = None

    @property
    def quantity(self) -> int:
        """Absolute number of units moved."""
        return abs(self.qty_change)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'txn_id': self.txn_id,
            'timestamp': self.timestamp.isoformat(),
            'user_id': self.user_id,
            'drug_id': self.drug_id,
            'action': self.action.value,
            'qty_change': self.qty_change,
            'details': self.details
        }


@dataclass(frozen=True)
class AccessLog:
    """Audit entry for user activity."""
    log_id: str
    timestamp: str
    emp_id: str
    action: str
    ip_address: Optional[str] = None
    details: Optional[str] = None


@dataclass
class LocationSummary:
    """Stock summary for one storage location."""
    location: str
    item_count: int = 0
    total_qty: int = 0
    stockout_count: int = 0
    low_stock_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'location': self.location,
            'item_count': self.item_count,
            'total_qty': self.total_qty,
            'stockout_count': self.stockout_count,
            'low_stock_count': self.low_stock_count
        }


# --- Row parsing helpers ---

def _required(row: Dict[str, Optional[str]], column: str) -> str:
    value = row.get(column)
    if value is None or value.strip() == "":
        raise ValueError(f"missing value for '{column}'")
    return value.strip()


def _optional(row: Dict[str, Optional[str]], column: str) -> Optional[str]:
    value = row.get(column)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _parse_int(row: Dict[str, Optional[str]], column: str) -> int:
    raw = _required(row, column)
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        number = float(raw)
    except ValueError:
        raise ValueError(f"'{column}' is not a number: {raw!r}")
    if not number.is_integer():
        raise ValueError(f"'{column}' must be a whole number: {raw!r}")
    return int(number)


def _parse_float(row: Dict[str, Optional[str]], column: str) -> float:
    raw = _required(row, column)
    try:
        number = float(raw)
    except ValueError:
        raise ValueError(f"'{column}' is not a number: {raw!r}")
    if not math.isfinite(number):
        raise ValueError(f"'{column}' must be a finite number: {raw!r}")
    return number


def _parse_date(row: Dict[str, Optional[str]], column: str) -> date:
    raw = _required(row, column)
    try:
        return date.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"'{column}' is not a YYYY-MM-DD date: {raw!r}")


def _parse_datetime(row: Dict[str, Optional[str]], column: str) -> datetime:
    raw = _required(row, column)
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"'{column}' is not an ISO timestamp: {raw!r}")


def _parse_enum(row: Dict[str, Optional[str]], column: str, enum_type):
    raw = _required(row, column)
    try:
        return enum_type(raw)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_type)
        raise ValueError(f"'{column}' must be one of {allowed}: {raw!r}")


# --- Row conversions ---

def row_to_inventory_item(row: Dict[str, Optional[str]]) -> InventoryItem:
    return InventoryItem(
        drug_id=_required(row, 'drug_id'),
        drug_name=_required(row, 'drug_name'),
        location=_required(row, 'location'),
        qty_on_hand=_parse_int(row, 'qty_on_hand'),
        expiry_date=_parse_date(row, 'expiry_date'),
        batch_lot=_required(row, 'batch_lot'),
        safety_stock=_parse_int(row, 'safety_stock'),
        avg_daily_use=_parse_float(row, 'avg_daily_use')
    )


def inventory_item_to_row(item: InventoryItem) -> Dict[str, str]:
    return {
        'drug_id': item.drug_id,
        'drug_name': item.drug_name,
        'location': item.location,
        'qty_on_hand': str(item.qty_on_hand),
        'expiry_date': item.expiry_date.isoformat(),
        'batch_lot': item.batch_lot,
        'safety_stock': str(item.safety_stock),
        'avg_daily_use': repr(float(item.avg_daily_use))
    }


def row_to_user(row: Dict[str, Optional[str]]) -> User:
    return User(
        emp_id=_required(row, 'emp_id'),
        role=_parse_enum(row, 'role', UserRole),
        status=_parse_enum(row, 'status', UserStatus),
        name=_required(row, 'name'),
        password_hash=_required(row, 'password_hash'),
        unified_group=_optional(row, 'unified_group') or "",
        created_at=_optional(row, 'created_at') or "",
        last_login=_optional(row, 'last_login') or ""
    )


def user_to_row(user: User) -> Dict[str, str]:
    return {
        'emp_id': user.emp_id,
        'role': user.role.value,
        'status': user.status.value,
        'name': user.name,
        'password_hash': user.password_hash,
        'unified_group': user.unified_group,
        'created_at': user.created_at,
        'last_login': user.last_login
    }


def row_to_transaction(row: Dict[str, Optional[str]]) -> Transaction:
    return Transaction(
        txn_id=_required(row, 'txn_id'),
        timestamp=_parse_datetime(row, 'timestamp'),
        user_id=_required(row, 'user_id'),
        drug_id=_required(row, 'drug_id'),
        action=_parse_enum(row, 'action', TransactionAction),
        qty_change=_parse_int(row, 'qty_change'),
        details=_optional(row, 'details')
    )


def transaction_to_row(txn: Transaction) -> Dict[str, str]:
    return {
        'txn_id': txn.txn_id,
        'timestamp': txn.timestamp.isoformat(sep=" "),
        'user_id': txn.user_id,
        'drug_id': txn.drug_id,
        'action': txn.action.value,
        'qty_change': str(txn.qty_change),
        'details': txn.details or ""
    }


def row_to_access_log(row: Dict[str, Optional[str]]) -> AccessLog:
    return AccessLog(
        log_id=_required(row, 'log_id'),
        timestamp=_required(row, 'timestamp'),
        emp_id=_required(row, 'emp_id'),
        action=_required(row, 'action'),
        ip_address=_optional(row, 'ip_address'),
        details=_optional(row, 'details')
    )


def access_log_to_row(log: AccessLog) -> Dict[str, str]:
    return {
        'log_id': log.log_id,
        'timestamp': log.timestamp,
        'emp_id': log.emp_id,
        'action': log.action,
        'ip_address': log.ip_address or "",
        'details': log.details or ""
    }


# --- Record families ---

@dataclass(frozen=True)
class RecordFamily:
    """Describes how one record type is laid out on disk."""
    name: str
    filename: str
    headers: Tuple[str, ...]
    from_row: Callable[[Dict[str, Optional[str]]], Any]
    to_row: Callable[[Any], Dict[str, str]]
    # Columns older files may lack
    optional_headers: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def required_headers(self) -> Tuple[str, ...]:
        return tuple(h for h in self.headers if h not in self.optional_headers)


INVENTORY = RecordFamily(
    name="inventory",
    filename="inventory_master.csv",
    headers=(
        'drug_id', 'drug_name', 'location', 'qty_on_hand',
        'expiry_date', 'batch_lot', 'safety_stock', 'avg_daily_use',
    ),
    from_row=row_to_inventory_item,
    to_row=inventory_item_to_row,
)

USERS = RecordFamily(
    name="users",
    filename="user_access.csv",
    headers=(
        'emp_id', 'role', 'status', 'name', 'password_hash',
        'unified_group', 'created_at', 'last_login',
    ),
    from_row=row_to_user,
    to_row=user_to_row,
    optional_headers=('unified_group', 'created_at', 'last_login'),
)

TRANSACTIONS = RecordFamily(
    name="transactions",
    filename="transaction_logs.csv",
    headers=('txn_id', 'timestamp', 'user_id', 'drug_id', 'action', 'qty_change', 'details'),
    from_row=row_to_transaction,
    to_row=transaction_to_row,
    optional_headers=('details',),
)

ACCESS_LOGS = RecordFamily(
    name="access_logs",
    filename="access_logs.csv",
    headers=('log_id', 'timestamp', 'emp_id', 'action', 'ip_address', 'details'),
    from_row=row_to_access_log,
    to_row=access_log_to_row,
    optional_headers=('ip_address', 'details'),
)

RECORD_FAMILIES = (INVENTORY, USERS, TRANSACTIONS, ACCESS_LOGS)
