"""
Query layer over the record store.

Lookups return enriched items (status, category, days to expiry computed
against the database clock). Stock mutations go through
``RecordStore.update_all`` so concurrent adjustments in this process do not
lose each other's writes, and every quantity change leaves an audit
transaction behind.
"""

import json
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from pharmacy_inventory.config import InventoryPolicy
from pharmacy_inventory.database.models import (
    ACCESS_LOGS,
    INVENTORY,
    TRANSACTIONS,
    USERS,
    AccessLog,
    InventoryItem,
    LocationSummary,
    StockStatus,
    Transaction,
    TransactionAction,
    User,
)
from pharmacy_inventory.database.record_store import RecordStore
from pharmacy_inventory.enrichment import (
    DEFAULT_CATEGORY_RULES,
    CategoryRules,
    EnrichedItem,
    enrich_all,
)
from pharmacy_inventory.errors import NotFoundError
from pharmacy_inventory.fuzzy_match import matches, suggest

logger = logging.getLogger(__name__)

DRUG_HISTORY_DAYS = 90
USAGE_STATS_DAYS = 30
ACCESS_LOG_LIMIT = 50
SUGGESTION_LIMIT = 5


@dataclass
class LookupResult:
    """Outcome of a drug lookup."""
    query: str
    found: bool
    items: List[EnrichedItem] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def total_qty(self) -> int:
        return sum(item.qty_on_hand for item in self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'query': self.query,
            'found': self.found,
            'total_qty': self.total_qty,
            'items': [item.to_dict() for item in self.items],
            'suggestions': self.suggestions
        }


@dataclass
class StockAdjustment:
    """Result of setting a batch to a new quantity."""
    item: InventoryItem
    qty_before: int
    transaction: Transaction

    @property
    def change(self) -> int:
        return self.item.qty_on_hand - self.qty_before

    def to_dict(self) -> Dict[str, Any]:
        return {
            'item': self.item.to_dict(),
            'qty_before': self.qty_before,
            'qty_after': self.item.qty_on_hand,
            'change': self.change,
            'transaction': self.transaction.to_dict()
        }


@dataclass
class UsageStats:
    """Usage totals for a drug over a trailing window."""
    drug: str
    days: int
    total_used: int
    total_received: int
    avg_daily_usage: float
    transaction_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'drug': self.drug,
            'days': self.days,
            'total_used': self.total_used,
            'total_received': self.total_received,
            'avg_daily_usage': self.avg_daily_usage,
            'transaction_count': self.transaction_count
        }


def _action_for_change(change: int) -> TransactionAction:
    if change > 0:
        return TransactionAction.RECEIVE
    if change < 0:
        return TransactionAction.USE
    return TransactionAction.ADJUSTED


def _new_id(prefix: str, now: datetime) -> str:
    return f"{prefix}{now:%Y%m%d%H%M%S}{uuid.uuid4().hex[:6].upper()}"


class InventoryDatabase:
    """Inventory, user, transaction and access-log queries backed by CSV files."""

    def __init__(self, store: Optional[RecordStore] = None,
                 policy: Optional[InventoryPolicy] = None,
                 rules: CategoryRules = DEFAULT_CATEGORY_RULES,
                 clock: Callable[[], datetime] = datetime.now):
        self.store = store or RecordStore()
        self.policy = policy or InventoryPolicy()
        self.rules = rules
        self.clock = clock

    def _now(self, now: Optional[Union[date, datetime]] = None) -> datetime:
        if now is None:
            return self.clock()
        if isinstance(now, datetime):
            return now
        return datetime.combine(now, datetime.min.time())

    # --- Inventory ---

    async def load_inventory(self) -> List[InventoryItem]:
        return await self.store.load_all(INVENTORY)

    async def save_inventory(self, items: List[InventoryItem]) -> None:
        await self.store.save_all(INVENTORY, items)

    async def load_enriched_inventory(self, now: Optional[datetime] = None) -> List[EnrichedItem]:
        return enrich_all(await self.load_inventory(), self._now(now), self.rules)

    async def search_inventory(self, query: str, now: Optional[datetime] = None) -> LookupResult:
        """
        Fuzzy drug lookup by name, or exact lookup by drug id.

        Returns a LookupResult with up to five suggested names when nothing
        matches.
        """
        inventory = await self.load_inventory()
        wanted_id = query.strip().lower()
        found = [
            item for item in inventory
            if item.drug_id.lower() == wanted_id
            or matches(item.drug_name, query, self.policy.fuzzy_threshold)
        ]

        if not found:
            suggestions = suggest(query, (item.drug_name for item in inventory), SUGGESTION_LIMIT)
            logger.info(f"No inventory match for '{query}'; suggesting {suggestions}")
            return LookupResult(query=query, found=False, suggestions=suggestions)

        return LookupResult(query=query, found=True, items=enrich_all(found, self._now(now), self.rules))

    async def require_item(self, query: str, now: Optional[datetime] = None) -> List[EnrichedItem]:
        """Like ``search_inventory`` but raises NotFoundError when nothing matches."""
        result = await self.search_inventory(query, now)
        if not result.found:
            raise NotFoundError(f"Drug '{query}' not found in inventory", result.suggestions)
        return result.items

    async def get_inventory_by_location(self, location: str, now: Optional[datetime] = None) -> List[EnrichedItem]:
        """Items whose location contains ``location``, case-insensitive."""
        wanted = location.lower()
        inventory = await self.load_inventory()
        return enrich_all(
            [item for item in inventory if wanted in item.location.lower()],
            self._now(now),
            self.rules
        )

    async def get_all_locations(self) -> List[LocationSummary]:
        summaries: Dict[str, LocationSummary] = {}
        for item in await self.load_inventory():
            summary = summaries.setdefault(item.location, LocationSummary(location=item.location))
            summary.item_count += 1
            summary.total_qty += item.qty_on_hand
            if item.qty_on_hand == 0:
                summary.stockout_count += 1
            if item.qty_on_hand < item.safety_stock:
                summary.low_stock_count += 1
        return sorted(summaries.values(), key=lambda s: s.location.lower())

    async def get_low_stock_items(self, now: Optional[datetime] = None) -> List[EnrichedItem]:
        """Items below safety stock: stockouts first, then by qty / safety stock."""
        inventory = await self.load_inventory()
        low = enrich_all(
            [item for item in inventory if item.qty_on_hand < item.safety_stock],
            self._now(now),
            self.rules
        )
        low.sort(key=lambda item: (
            item.status != StockStatus.STOCKOUT,
            item.qty_on_hand / item.safety_stock
        ))
        return low

    async def get_expiring_items(self, days: int, now: Optional[datetime] = None) -> List[EnrichedItem]:
        """Unexpired items with at most ``days`` days left, soonest first."""
        enriched = await self.load_enriched_inventory(now)
        expiring = [item for item in enriched if 0 < item.days_remaining <= days]
        expiring.sort(key=lambda item: item.days_remaining)
        return expiring

    async def get_expired_items(self, now: Optional[datetime] = None) -> List[EnrichedItem]:
        enriched = await self.load_enriched_inventory(now)
        return [item for item in enriched if item.status == StockStatus.EXPIRED]

    async def update_inventory_item(self, drug_id: str, location: Optional[str] = None,
                                    batch_lot: Optional[str] = None, **updates) -> Optional[InventoryItem]:
        """
        Apply field updates to the first record matching the given key parts.

        Returns the updated record, or None when nothing matched.

        Raises:
            ValueError: An update would make the record invalid.
            TypeError: ``updates`` names a field InventoryItem does not have.
        """
        def mutate(items: List[InventoryItem]) -> Optional[InventoryItem]:
            for index, item in enumerate(items):
                if item.drug_id != drug_id:
                    continue
                if location is not None and item.location != location:
                    continue
                if batch_lot is not None and item.batch_lot != batch_lot:
                    continue
                items[index] = replace(item, **updates)
                return items[index]
            return None

        updated = await self.store.update_all(INVENTORY, mutate)
        if updated is None:
            logger.warning(f"No inventory record for {drug_id} at {location or 'any location'}")
        return updated

    async def adjust_stock(self, drug_name: str, location: str, new_quantity: int, user_id: str,
                           reason: Optional[str] = None, batch_lot: Optional[str] = None,
                           now: Optional[datetime] = None) -> StockAdjustment:
        """
        Set a batch to an absolute quantity and log the change.

        The drug name and location are matched case-insensitively. The audit
        transaction is RECEIVE for an increase, USE for a decrease and ADJUSTED
        when the quantity is unchanged.

        Raises:
            ValueError: ``new_quantity`` is negative.
            NotFoundError: No batch matches the drug name and location.
        """
        if new_quantity < 0:
            raise ValueError(f"new_quantity cannot be negative: {new_quantity}")
        now = self._now(now)

        def mutate(items: List[InventoryItem]):
            for index, item in enumerate(items):
                if item.drug_name.lower() != drug_name.lower() or item.location.lower() != location.lower():
                    continue
                if batch_lot is not None and item.batch_lot != batch_lot:
                    continue
                items[index] = replace(item, qty_on_hand=new_quantity)
                return item.qty_on_hand, items[index]
            return None

        outcome = await self.store.update_all(INVENTORY, mutate)
        if outcome is None:
            inventory = await self.load_inventory()
            suggestions = suggest(drug_name, (item.drug_name for item in inventory), SUGGESTION_LIMIT)
            raise NotFoundError(f"Drug '{drug_name}' not found at location '{location}'", suggestions)

        qty_before, updated = outcome
        change = new_quantity - qty_before
        action = _action_for_change(change)
        transaction = Transaction(
            txn_id=_new_id("TXN", now),
            timestamp=now,
            user_id=user_id,
            drug_id=updated.drug_id,
            action=action,
            qty_change=change,
            details=json.dumps({
                'drug_name': updated.drug_name,
                'location': updated.location,
                'qty_before': qty_before,
                'qty_after': new_quantity,
                'batch_lot': updated.batch_lot,
                'reason': reason or f"Stock {action.value.lower()} by {user_id}"
            })
        )
        try:
            await self.add_transaction(transaction)
        except Exception as e:
            logger.error(f"Could not log stock change for {updated.drug_name} at {updated.location}: {e}")
            await self._restore_quantity(updated, new_quantity, qty_before)
            raise
        logger.info(f"{user_id} set {updated.drug_name} at {updated.location} from {qty_before} to {new_quantity}")
        return StockAdjustment(item=updated, qty_before=qty_before, transaction=transaction)

    async def _restore_quantity(self, item: InventoryItem, expected: int, qty_before: int) -> None:
        """Undo an adjustment unless the batch has changed again since."""
        def mutate(items: List[InventoryItem]):
            for index, current in enumerate(items):
                if current.key == item.key and current.qty_on_hand == expected:
                    items[index] = replace(current, qty_on_hand=qty_before)
                    return current.key
            return None

        if await self.store.update_all(INVENTORY, mutate) is None:
            logger.warning(f"{item.drug_name} at {item.location} changed again; quantity not restored")

    # --- Users ---

    async def load_users(self) -> List[User]:
        return await self.store.load_all(USERS)

    async def save_users(self, users: List[User]) -> None:
        await self.store.save_all(USERS, users)

    async def get_user_by_id(self, emp_id: str) -> Optional[User]:
        for user in await self.load_users():
            if user.emp_id == emp_id:
                return user
        return None

    async def update_user(self, emp_id: str, **updates) -> Optional[User]:
        def mutate(users: List[User]) -> Optional[User]:
            for index, user in enumerate(users):
                if user.emp_id == emp_id:
                    users[index] = replace(user, **updates)
                    return users[index]
            return None

        return await self.store.update_all(USERS, mutate)

    # --- Transactions ---

    async def load_transactions(self, days: Optional[int] = None, now: Optional[datetime] = None) -> List[Transaction]:
        """All transactions, or only those from the last ``days`` days."""
        if days is not None and days < 1:
            raise ValueError(f"days must be at least 1: {days}")
        transactions = await self.store.load_all(TRANSACTIONS)
        if days is None:
            return transactions

        # Timestamps are compared as local wall-clock times
        cutoff = (self._now(now) - timedelta(days=days)).replace(tzinfo=None)
        return [txn for txn in transactions if txn.timestamp.replace(tzinfo=None) >= cutoff]

    async def add_transaction(self, transaction: Transaction) -> None:
        await self.store.append(TRANSACTIONS, transaction)

    async def get_transactions_for_drug(self, drug_id: str, days: int = DRUG_HISTORY_DAYS,
                                        now: Optional[datetime] = None) -> List[Transaction]:
        wanted = drug_id.lower()
        return [txn for txn in await self.load_transactions(days, now) if txn.drug_id.lower() == wanted]

    async def get_drug_usage_stats(self, drug_id: str, days: int = USAGE_STATS_DAYS,
                                   now: Optional[datetime] = None) -> UsageStats:
        drug_transactions = await self.get_transactions_for_drug(drug_id, days, now)
        total_used = sum(txn.quantity for txn in drug_transactions if txn.action == TransactionAction.USE)
        total_received = sum(txn.qty_change for txn in drug_transactions if txn.action == TransactionAction.RECEIVE)
        return UsageStats(
            drug=drug_id,
            days=days,
            total_used=total_used,
            total_received=total_received,
            avg_daily_usage=total_used / days,
            transaction_count=len(drug_transactions)
        )

    # --- Access logs ---

    async def add_access_log(self, emp_id: str, action: str, ip_address: Optional[str] = None,
                             details: Optional[str] = None, now: Optional[datetime] = None) -> AccessLog:
        now = self._now(now)
        log = AccessLog(
            log_id=_new_id("LOG", now),
            timestamp=now.isoformat(sep=" ", timespec="seconds"),
            emp_id=emp_id,
            action=action,
            ip_address=ip_address,
            details=details
        )
        await self.store.append(ACCESS_LOGS, log)
        return log

    async def get_access_logs(self, limit: int = ACCESS_LOG_LIMIT) -> List[AccessLog]:
        """Most recent entries first."""
        logs = await self.store.load_all(ACCESS_LOGS)
        return list(reversed(logs))[:limit]
