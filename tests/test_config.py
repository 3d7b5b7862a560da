"""
Unit tests for policy validation and error types.
"""
import pytest

from pharmacy_inventory.config import InventoryPolicy
from pharmacy_inventory.errors import NotFoundError, ValidationError


class TestInventoryPolicy:
    """Test InventoryPolicy validation."""

    def test_defaults(self):
        policy = InventoryPolicy()
        assert policy.to_dict() == {
            'lead_time_days': 7,
            'target_days_of_supply': 30,
            'service_level': 0.95,
            'pack_size': 50,
            'fuzzy_threshold': 0.6,
        }

    @pytest.mark.parametrize("overrides", [
        {"lead_time_days": 0},
        {"lead_time_days": 31},
        {"target_days_of_supply": 0},
        {"service_level": 0.5},
        {"pack_size": 0},
        {"fuzzy_threshold": 1.5},
    ])
    def test_out_of_range(self, overrides):
        with pytest.raises(ValueError):
            InventoryPolicy(**overrides)

    def test_accepts_supported_service_levels(self):
        for level in (0.90, 0.95, 0.98, 0.99):
            assert InventoryPolicy(service_level=level).service_level == level


class TestErrors:
    """Test error types."""

    def test_validation_error_message(self):
        error = ValidationError("inventory_master.csv", 4, "'qty_on_hand' is not a number: 'x'")
        assert isinstance(error, ValueError)
        assert str(error) == "Invalid record in inventory_master.csv row 4: 'qty_on_hand' is not a number: 'x'"

    def test_not_found_carries_suggestions(self):
        error = NotFoundError("Drug 'X' not found", ["Propofol"])
        assert isinstance(error, LookupError)
        assert error.suggestions == ["Propofol"]
