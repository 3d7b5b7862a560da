"""
Inventory enrichment: derive stock status, handling category and days to expiry.

Enriched values depend on "now", so they are computed on every read and never
persisted. All functions here are pure.
"""

import math
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from pharmacy_inventory.database.models import DrugCategory, InventoryItem, StockStatus

SECONDS_PER_DAY = 86400

# Below this fraction of safety stock an item is critical rather than low
CRITICAL_STOCK_RATIO = 0.5

CONTROLLED_SUBSTANCES = (
    'Morphine',
    'Fentanyl',
    'Oxycodone',
    'Hydrocodone',
    'Diazepam',
    'Alprazolam',
    'Ketamine',
    'Codeine',
    'Methadone',
    'Hydromorphone',
)

REFRIGERATED_DRUGS = ('INSULIN', 'VACCINE', 'EPINEPHRINE', 'BIOLOGICS')

REFRIGERATED_LOCATIONS = ('FRIDGE', 'REFRIGERAT', 'COLD')


@dataclass(frozen=True)
class CategoryRules:
    """Keyword tables used to assign a drug category."""
    controlled_substances: Tuple[str, ...] = CONTROLLED_SUBSTANCES
    refrigerated_drugs: Tuple[str, ...] = REFRIGERATED_DRUGS
    refrigerated_locations: Tuple[str, ...] = REFRIGERATED_LOCATIONS


DEFAULT_CATEGORY_RULES = CategoryRules()


@dataclass(frozen=True)
class EnrichedItem:
    """Inventory record plus status fields relative to a point in time."""
    drug_id: str
    drug_name: str
    location: str
    qty_on_hand: int
    expiry_date: date
    batch_lot: str
    safety_stock: int
    avg_daily_use: float
    status: StockStatus
    category: DrugCategory
    days_remaining: int

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.drug_id, self.location, self.batch_lot)

    @property
    def below_safety_stock(self) -> bool:
        return self.qty_on_hand < self.safety_stock

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
            'avg_daily_use': self.avg_daily_use,
            'status': self.status.value,
            'category': self.category.value,
            'days_remaining': self.days_remaining
        }


def _as_datetime(now: Union[date, datetime]) -> datetime:
    if isinstance(now, datetime):
        return now
    return datetime.combine(now, time.min)


def _expiry_instant(expiry_date: date, now: datetime) -> datetime:
    # An expiry date means midnight at the start of that day
    return datetime.combine(expiry_date, time.min, tzinfo=now.tzinfo)


def determine_stock_status(qty_on_hand: int, safety_stock: int, expiry_date: date,
                           now: Union[date, datetime]) -> StockStatus:
    """Expiry takes priority over any quantity-based status."""
    now = _as_datetime(now)
    if _expiry_instant(expiry_date, now) < now:
        return StockStatus.EXPIRED
    if qty_on_hand == 0:
        return StockStatus.STOCKOUT
    if qty_on_hand < safety_stock * CRITICAL_STOCK_RATIO:
        return StockStatus.CRITICAL
    if qty_on_hand < safety_stock:
        return StockStatus.LOW
    return StockStatus.ADEQUATE


def calculate_days_remaining(expiry_date: date, now: Union[date, datetime]) -> int:
    """Whole days until expiry, rounded up; negative once expired."""
    now = _as_datetime(now)
    delta = _expiry_instant(expiry_date, now) - now
    return math.ceil(delta.total_seconds() / SECONDS_PER_DAY)


def determine_category(drug_name: str, location: str = "",
                       rules: CategoryRules = DEFAULT_CATEGORY_RULES) -> DrugCategory:
    upper_name = drug_name.upper()
    upper_location = location.upper()

    if any(cs.upper() in upper_name for cs in rules.controlled_substances):
        return DrugCategory.CONTROLLED
    if any(rd.upper() in upper_name for rd in rules.refrigerated_drugs):
        return DrugCategory.REFRIGERATED
    if any(rl.upper() in upper_location for rl in rules.refrigerated_locations):
        return DrugCategory.REFRIGERATED
    return DrugCategory.STANDARD


def enrich(item: InventoryItem, now: Optional[Union[date, datetime]] = None,
           rules: CategoryRules = DEFAULT_CATEGORY_RULES) -> EnrichedItem:
    """
    Build the enriched view of an inventory record.

    Args:
        item: Raw inventory record
        now: Reference time; defaults to the current local time
        rules: Category keyword tables

    Returns:
        EnrichedItem with status, category and days_remaining filled in
    """
    now = _as_datetime(now) if now is not None else datetime.now()
    return EnrichedItem(
        drug_id=item.drug_id,
        drug_name=item.drug_name,
        location=item.location,
        qty_on_hand=item.qty_on_hand,
        expiry_date=item.expiry_date,
        batch_lot=item.batch_lot,
        safety_stock=item.safety_stock,
        avg_daily_use=item.avg_daily_use,
        status=determine_stock_status(item.qty_on_hand, item.safety_stock, item.expiry_date, now),
        category=determine_category(item.drug_name, item.location, rules),
        days_remaining=calculate_days_remaining(item.expiry_date, now)
    )


def enrich_all(items: Iterable[InventoryItem], now: Optional[Union[date, datetime]] = None,
               rules: CategoryRules = DEFAULT_CATEGORY_RULES) -> List[EnrichedItem]:
    """Enrich a batch of records against the same reference time."""
    now = _as_datetime(now) if now is not None else datetime.now()
    return [enrich(item, now, rules) for item in items]
