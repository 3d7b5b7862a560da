"""
Risk decisions for inventory items: stockout risk score, urgency tier,
pack-rounded order quantity, safety-stock review and FEFO batch ordering.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

from pharmacy_inventory.config import (
    DEFAULT_LEAD_TIME_DAYS,
    DEFAULT_PACK_SIZE,
    DEFAULT_TARGET_DAYS_OF_SUPPLY,
    InventoryPolicy,
)
from pharmacy_inventory.database.models import DrugCategory, InventoryItem, StockStatus, Transaction
from pharmacy_inventory.enrichment import (
    DEFAULT_CATEGORY_RULES,
    CategoryRules,
    EnrichedItem,
    enrich,
)
from pharmacy_inventory.forecasting import average_daily_usage, calculate_safety_stock

logger = logging.getLogger(__name__)

# Days-until-stockout reported for stocked items nobody is using
NO_USAGE_DAYS = 999
USAGE_WINDOW_DAYS = 30
SAFETY_STOCK_MULTIPLIER = 2
ADJUSTMENT_THRESHOLD_PCT = 10.0

CATEGORY_MULTIPLIERS = {
    DrugCategory.CONTROLLED: 1.2,
    DrugCategory.REFRIGERATED: 1.1,
    DrugCategory.STANDARD: 1.0,
}


class Urgency(Enum):
    """Urgency tier derived from the risk score."""
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


URGENCY_THRESHOLDS = (
    (80, Urgency.CRITICAL),
    (60, Urgency.HIGH),
    (40, Urgency.MEDIUM),
    (20, Urgency.LOW),
)


@dataclass
class RiskAssessment:
    """Stockout risk decision for one inventory item."""
    drug_id: str
    drug_name: str
    location: str
    batch_lot: str
    category: DrugCategory
    qty_on_hand: int
    safety_stock: int
    avg_daily_usage: float
    days_until_stockout: int
    remaining_after_lead_time: float
    risk_score: float
    urgency: Urgency
    priority: int
    recommended_qty: int
    rationale: str

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'drug_id': self.drug_id,
            'drug_name': self.drug_name,
            'location': self.location,
            'batch_lot': self.batch_lot,
            'category': self.category.value,
            'qty_on_hand': self.qty_on_hand,
            'safety_stock': self.safety_stock,
            'avg_daily_usage': round(self.avg_daily_usage, 2),
            'days_until_stockout': self.days_until_stockout,
            'remaining_after_lead_time': round(self.remaining_after_lead_time, 1),
            'risk_score': round(self.risk_score),
            'urgency': self.urgency.value,
            'priority': self.priority,
            'recommended_qty': self.recommended_qty,
            'rationale': self.rationale
        }


@dataclass
class SafetyStockReview:
    """Recommended safety stock compared with the recorded value."""
    drug_id: str
    drug_name: str
    location: str
    current_safety_stock: int
    recommended_safety_stock: int
    difference: int
    percent_change: float
    needs_adjustment: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'drug_id': self.drug_id,
            'drug_name': self.drug_name,
            'location': self.location,
            'current_safety_stock': self.current_safety_stock,
            'recommended_safety_stock': self.recommended_safety_stock,
            'difference': self.difference,
            'percent_change': round(self.percent_change, 1),
            'needs_adjustment': self.needs_adjustment
        }


@dataclass
class FefoEntry:
    """One batch in first-expired-first-out order."""
    priority: int
    item: EnrichedItem

    def to_dict(self) -> Dict[str, Any]:
        data = self.item.to_dict()
        data['fefo_priority'] = self.priority
        return data


def days_until_stockout(qty_on_hand: int, avg_daily_usage: float) -> int:
    if avg_daily_usage > 0:
        return math.floor(qty_on_hand / avg_daily_usage)
    return NO_USAGE_DAYS if qty_on_hand > 0 else 0


def calculate_risk_score(
    qty_on_hand: int,
    safety_stock: int,
    avg_daily_usage: float,
    lead_time_days: int = DEFAULT_LEAD_TIME_DAYS,
    category: DrugCategory = DrugCategory.STANDARD
) -> float:
    """
    Stockout risk score in [0, 100].

    Scoring bands, first match wins: out of stock 100; runs out within the
    lead time 90; days left ≤ lead time 80 - (days/LT) x 30; below safety stock
    40 + shortfall ratio x 20; days left ≤ 2 x lead time 20 + (1 - days/2LT) x 20.
    The result is scaled by the category multiplier and capped at 100.
    """
    days = days_until_stockout(qty_on_hand, avg_daily_usage)
    remaining_after_lead_time = qty_on_hand - avg_daily_usage * lead_time_days

    if qty_on_hand == 0:
        score = 100.0
    elif remaining_after_lead_time <= 0:
        score = 90.0
    elif days <= lead_time_days:
        score = 80 - (days / lead_time_days) * 30
    elif qty_on_hand < safety_stock:
        score = 40 + ((safety_stock - qty_on_hand) / safety_stock) * 20
    elif days <= lead_time_days * 2:
        score = 20 + (1 - days / (lead_time_days * 2)) * 20
    else:
        score = 0.0

    return min(100.0, score * CATEGORY_MULTIPLIERS.get(category, 1.0))


def urgency_for_score(score: float) -> Urgency:
    for threshold, urgency in URGENCY_THRESHOLDS:
        if score >= threshold:
            return urgency
    return Urgency.MINIMAL


def recommend_order_quantity(
    qty_on_hand: int,
    safety_stock: int,
    avg_daily_use: float,
    target_days_of_supply: int = DEFAULT_TARGET_DAYS_OF_SUPPLY,
    pack_size: int = DEFAULT_PACK_SIZE
) -> int:
    """
    Units to order, rounded up to whole packs.

    Target stock is the larger of twice the safety stock and the target days of
    supply at the current usage rate. Returns 0 when stock already meets it.
    """
    target = max(safety_stock * SAFETY_STOCK_MULTIPLIER, avg_daily_use * target_days_of_supply)
    needed = math.ceil(target - qty_on_hand)
    if needed <= 0:
        return 0
    return math.ceil(needed / pack_size) * pack_size


def _priority_and_rationale(qty_on_hand: int, safety_stock: int, days: int,
                            remaining_after_lead_time: float, lead_time_days: int):
    if qty_on_hand == 0:
        return 1, "EMERGENCY ORDER - Already out of stock"
    if remaining_after_lead_time <= 0:
        return 2, f"URGENT - Order now (will run out in {days} days, lead time is {lead_time_days} days)"
    if days <= lead_time_days:
        return 3, f"ORDER IMMEDIATELY - {days} days remaining"
    if qty_on_hand < safety_stock:
        return 4, "Order soon - Below safety stock"
    return 5, f"Monitor - {days} days remaining"


def assess_risk(
    item: Union[InventoryItem, EnrichedItem],
    avg_daily_usage: float,
    policy: Optional[InventoryPolicy] = None,
    rules: CategoryRules = DEFAULT_CATEGORY_RULES
) -> RiskAssessment:
    """
    Full risk decision for one item.

    Args:
        item: Raw or enriched inventory record
        avg_daily_usage: Observed units per day for the drug
        policy: Lead time, target days of supply and pack size
        rules: Category tables, used when ``item`` is not enriched

    Returns:
        RiskAssessment
    """
    policy = policy or InventoryPolicy()
    if isinstance(item, EnrichedItem):
        category = item.category
    else:
        category = enrich(item, rules=rules).category

    lead_time = policy.lead_time_days
    days = days_until_stockout(item.qty_on_hand, avg_daily_usage)
    remaining_after_lead_time = item.qty_on_hand - avg_daily_usage * lead_time
    score = calculate_risk_score(item.qty_on_hand, item.safety_stock, avg_daily_usage, lead_time, category)
    priority, rationale = _priority_and_rationale(
        item.qty_on_hand, item.safety_stock, days, remaining_after_lead_time, lead_time
    )

    return RiskAssessment(
        drug_id=item.drug_id,
        drug_name=item.drug_name,
        location=item.location,
        batch_lot=item.batch_lot,
        category=category,
        qty_on_hand=item.qty_on_hand,
        safety_stock=item.safety_stock,
        avg_daily_usage=avg_daily_usage,
        days_until_stockout=days,
        remaining_after_lead_time=remaining_after_lead_time,
        risk_score=score,
        urgency=urgency_for_score(score),
        priority=priority,
        recommended_qty=recommend_order_quantity(
            item.qty_on_hand,
            item.safety_stock,
            avg_daily_usage,
            policy.target_days_of_supply,
            policy.pack_size
        ),
        rationale=rationale
    )


def assess_inventory_risk(
    items: Iterable[Union[InventoryItem, EnrichedItem]],
    transactions: Iterable[Transaction],
    policy: Optional[InventoryPolicy] = None,
    now: Optional[Union[date, datetime]] = None,
    include_minimal: bool = False
) -> List[RiskAssessment]:
    """
    Assess every item using its drug's usage over the last 30 days.

    Items scoring 0 are dropped unless ``include_minimal`` is set. Results are
    ordered by priority, then by descending risk score.
    """
    policy = policy or InventoryPolicy()
    transactions = list(transactions)

    usage_cache: Dict[str, float] = {}
    assessments = []
    for item in items:
        if item.drug_id not in usage_cache:
            usage_cache[item.drug_id] = average_daily_usage(transactions, item.drug_id, USAGE_WINDOW_DAYS, now)
        assessment = assess_risk(item, usage_cache[item.drug_id], policy)
        if assessment.risk_score > 0 or include_minimal:
            assessments.append(assessment)

    assessments.sort(key=lambda a: (a.priority, -a.risk_score))
    logger.info(f"Assessed stockout risk: {len(assessments)} items at risk")
    return assessments


def review_safety_stock(
    item: Union[InventoryItem, EnrichedItem],
    policy: Optional[InventoryPolicy] = None,
    avg_daily_use: Optional[float] = None,
    demand_std_dev: Optional[float] = None
) -> SafetyStockReview:
    """Compare recorded safety stock against the Wilson recommendation."""
    policy = policy or InventoryPolicy()
    usage = item.avg_daily_use if avg_daily_use is None else avg_daily_use
    recommended = calculate_safety_stock(usage, policy.lead_time_days, policy.service_level, demand_std_dev)
    difference = recommended - item.safety_stock

    if item.safety_stock > 0:
        percent_change = difference / item.safety_stock * 100
    else:
        percent_change = 100.0 if recommended > 0 else 0.0

    return SafetyStockReview(
        drug_id=item.drug_id,
        drug_name=item.drug_name,
        location=item.location,
        current_safety_stock=item.safety_stock,
        recommended_safety_stock=recommended,
        difference=difference,
        percent_change=percent_change,
        needs_adjustment=abs(percent_change) > ADJUSTMENT_THRESHOLD_PCT
    )


def fefo_order(items: Iterable[EnrichedItem]) -> Dict[str, List[FefoEntry]]:
    """
    Group batches by drug, earliest expiry first.

    Expired and empty batches are left out. Priority 1 is the batch to use first.
    """
    by_drug: Dict[str, List[EnrichedItem]] = defaultdict(list)
    for item in items:
        if item.status == StockStatus.EXPIRED or item.qty_on_hand <= 0:
            continue
        by_drug[item.drug_id].append(item)

    ordered = {}
    for drug_id, batches in by_drug.items():
        batches.sort(key=lambda b: (b.expiry_date, b.location, b.batch_lot))
        ordered[drug_id] = [FefoEntry(priority=i, item=batch) for i, batch in enumerate(batches, start=1)]
    return ordered
