"""
Unit tests for risk scoring, urgency tiers and order sizing.
"""
import math
from datetime import date, timedelta

import pytest

from pharmacy_inventory.config import InventoryPolicy
from pharmacy_inventory.database.models import DrugCategory
from pharmacy_inventory.enrichment import enrich_all
from pharmacy_inventory.risk_engine import (
    NO_USAGE_DAYS,
    Urgency,
    assess_inventory_risk,
    assess_risk,
    calculate_risk_score,
    days_until_stockout,
    fefo_order,
    recommend_order_quantity,
    review_safety_stock,
    urgency_for_score,
)


class TestRiskScore:
    """Test stockout risk scoring bands."""

    def test_out_of_stock(self):
        assert calculate_risk_score(0, 10, 5.0, 7) == 100

    def test_runs_out_within_lead_time(self):
        assert calculate_risk_score(30, 10, 5.0, 7) == 90

    def test_days_within_lead_time(self):
        # 36 units at 5/day: 7 days left, 1 unit left after lead time
        assert calculate_risk_score(36, 10, 5.0, 7) == pytest.approx(50.0)

    def test_below_safety_stock(self):
        assert calculate_risk_score(50, 100, 1.0, 7) == pytest.approx(50.0)

    def test_within_two_lead_times(self):
        assert calculate_risk_score(60, 10, 5.0, 7) == pytest.approx(20 + (1 - 12 / 14) * 20)

    def test_comfortable_stock(self):
        assert calculate_risk_score(200, 10, 5.0, 7) == 0

    def test_no_usage(self):
        assert days_until_stockout(10, 0) == NO_USAGE_DAYS
        assert days_until_stockout(0, 0) == 0
        assert calculate_risk_score(10, 0, 0.0, 7) == 0

    def test_category_multiplier_is_capped(self):
        assert calculate_risk_score(30, 10, 5.0, 7, DrugCategory.CONTROLLED) == 100
        assert calculate_risk_score(36, 10, 5.0, 7, DrugCategory.REFRIGERATED) == pytest.approx(55.0)

    @pytest.mark.parametrize("qty, ss, avg, lead_time", [
        (0, 0, 0.0, 1), (1, 1000, 0.1, 30), (999, 1, 50.0, 7), (15, 40, 8.0, 14),
    ])
    def test_score_in_range(self, qty, ss, avg, lead_time):
        for category in DrugCategory:
            assert 0 <= calculate_risk_score(qty, ss, avg, lead_time, category) <= 100


class TestUrgency:
    """Test urgency tiers."""

    @pytest.mark.parametrize("score, expected", [
        (100, Urgency.CRITICAL),
        (80, Urgency.CRITICAL),
        (79.9, Urgency.HIGH),
        (60, Urgency.HIGH),
        (40, Urgency.MEDIUM),
        (20, Urgency.LOW),
        (19.99, Urgency.MINIMAL),
        (0, Urgency.MINIMAL),
    ])
    def test_thresholds(self, score, expected):
        assert urgency_for_score(score) == expected


class TestOrderQuantity:
    """Test pack-rounded order sizing."""

    def test_safety_stock_target(self):
        assert recommend_order_quantity(0, 10, 0.5) == 50

    def test_days_of_supply_target(self):
        assert recommend_order_quantity(0, 10, 5.0) == 150
        assert recommend_order_quantity(0, 10, 5.2) == 200

    def test_enough_stock(self):
        assert recommend_order_quantity(100, 10, 1.0) == 0
        assert recommend_order_quantity(0, 0, 0.0) == 0

    def test_custom_pack_and_target(self):
        assert recommend_order_quantity(5, 10, 2.0, target_days_of_supply=14, pack_size=12) == 24

    @pytest.mark.parametrize("qty, ss, avg, pack", [
        (0, 10, 3.3, 50), (7, 25, 1.1, 20), (500, 10, 1.0, 50), (3, 3, 0.0, 7), (12, 100, 9.9, 1),
    ])
    def test_non_negative_multiple_of_pack(self, qty, ss, avg, pack):
        quantity = recommend_order_quantity(qty, ss, avg, 30, pack)
        assert quantity >= 0
        assert quantity % pack == 0


class TestAssessRisk:
    """Test full per-item assessments."""

    @pytest.mark.parametrize("avg", [0.5, 2.0, 4.0])
    def test_out_of_stock_end_to_end(self, make_item, avg):
        item = make_item(qty_on_hand=0, safety_stock=10, avg_daily_use=avg)
        assessment = assess_risk(item, avg, InventoryPolicy(lead_time_days=7))

        assert assessment.risk_score == 100
        assert assessment.urgency == Urgency.CRITICAL
        assert assessment.priority == 1
        assert assessment.rationale == "EMERGENCY ORDER - Already out of stock"
        assert assessment.recommended_qty == math.ceil(max(20, avg * 30) / 50) * 50

    def test_rationales(self, make_item):
        policy = InventoryPolicy(lead_time_days=7)
        cases = [
            (30, 10, 5.0, 2, "URGENT - Order now (will run out in 6 days, lead time is 7 days)"),
            (36, 10, 5.0, 3, "ORDER IMMEDIATELY - 7 days remaining"),
            (50, 100, 1.0, 4, "Order soon - Below safety stock"),
            (200, 10, 5.0, 5, "Monitor - 40 days remaining"),
        ]
        for qty, ss, avg, priority, rationale in cases:
            assessment = assess_risk(make_item(qty_on_hand=qty, safety_stock=ss), avg, policy)
            assert assessment.priority == priority
            assert assessment.rationale == rationale

    def test_controlled_category_detected(self, make_item):
        item = make_item(drug_name="Morphine 10mg", qty_on_hand=36, safety_stock=10)
        assessment = assess_risk(item, 5.0)
        assert assessment.category == DrugCategory.CONTROLLED
        assert assessment.risk_score == pytest.approx(60.0)
        assert assessment.urgency == Urgency.HIGH

    def test_to_dict(self, make_item):
        data = assess_risk(make_item(qty_on_hand=0), 2.0).to_dict()
        assert data["urgency"] == "CRITICAL"
        assert data["risk_score"] == 100
        assert data["category"] == "standard"


class TestInventoryRisk:
    """Test the inventory-wide risk sweep."""

    def test_sorted_by_priority_then_score(self, sample_inventory, usage_generator, fixed_now):
        transactions = usage_generator("D001", days=30, base=8) + usage_generator("D003", days=30, base=3)
        enriched = enrich_all(sample_inventory, fixed_now)
        assessments = assess_inventory_risk(enriched, transactions, InventoryPolicy(), fixed_now)

        keys = [(a.priority, -a.risk_score) for a in assessments]
        assert keys == sorted(keys)
        assert assessments[0].drug_id == "D002"
        assert all(a.risk_score > 0 for a in assessments)
        # Paracetamol has no usage history and plenty of stock
        assert "D004" not in {a.drug_id for a in assessments}

    def test_usage_comes_from_transactions(self, make_item, usage_generator, fixed_now):
        item = make_item(qty_on_hand=100, safety_stock=10, avg_daily_use=0.0)
        [assessment] = assess_inventory_risk([item], usage_generator("D001", days=30, base=10), now=fixed_now)
        assert assessment.avg_daily_usage == pytest.approx(10.0)
        assert assessment.days_until_stockout == 10

    def test_include_minimal(self, make_item, fixed_now):
        item = make_item(qty_on_hand=500, safety_stock=10)
        assert assess_inventory_risk([item], [], now=fixed_now) == []
        assert len(assess_inventory_risk([item], [], now=fixed_now, include_minimal=True)) == 1


class TestSafetyStockReview:
    """Test safety stock review."""

    def test_matches_recommendation(self, make_item):
        item = make_item(safety_stock=10, avg_daily_use=10.0)
        review = review_safety_stock(item, InventoryPolicy(lead_time_days=9))
        assert review.recommended_safety_stock == 10
        assert review.difference == 0
        assert not review.needs_adjustment

    def test_flags_large_change(self, make_item):
        item = make_item(safety_stock=5, avg_daily_use=10.0)
        review = review_safety_stock(item, InventoryPolicy(lead_time_days=9))
        assert review.difference == 5
        assert review.percent_change == pytest.approx(100.0)
        assert review.needs_adjustment

    def test_zero_current_safety_stock(self, make_item):
        review = review_safety_stock(make_item(safety_stock=0, avg_daily_use=0.0))
        assert review.percent_change == 0.0
        assert not review.needs_adjustment


class TestFefo:
    """Test first-expired-first-out ordering."""

    def test_orders_batches_and_skips_expired(self, make_item, fixed_now):
        today = fixed_now.date()
        items = [
            make_item(batch_lot="LATE", expiry_date=today + timedelta(days=200)),
            make_item(batch_lot="SOON", expiry_date=today + timedelta(days=10)),
            make_item(batch_lot="GONE", expiry_date=today - timedelta(days=1)),
            make_item(batch_lot="EMPTY", qty_on_hand=0, expiry_date=today + timedelta(days=5)),
            make_item(drug_id="D009", drug_name="Saline", batch_lot="S1", expiry_date=date(2026, 6, 1)),
        ]
        ordered = fefo_order(enrich_all(items, fixed_now))

        assert [entry.item.batch_lot for entry in ordered["D001"]] == ["SOON", "LATE"]
        assert [entry.priority for entry in ordered["D001"]] == [1, 2]
        assert ordered["D009"][0].to_dict()["fefo_priority"] == 1
