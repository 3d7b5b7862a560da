"""
Tests for the pharmacy inventory MCP tools.
"""
import json

import pytest

from pharmacy_inventory import inventory_mcp_server as mcp_server
from pharmacy_inventory.database.models import Transaction, TransactionAction


class TestInventoryTools:
    """Test inventory lookup and update tools."""

    @pytest.mark.asyncio
    async def test_lookup_found(self, seeded_database):
        result = await mcp_server.lookup_inventory(seeded_database, "Propofol")
        assert result["success"]
        assert result["data"]["total_qty"] == 135

    @pytest.mark.asyncio
    async def test_lookup_not_found(self, seeded_database):
        result = await mcp_server.lookup_inventory(seeded_database, "Morfeen")
        assert not result["success"]
        assert "Morphine 10mg" in result["data"]["suggestions"]

    @pytest.mark.asyncio
    async def test_location_inventory(self, seeded_database):
        summary = await mcp_server.get_location_inventory(seeded_database)
        assert len(summary["data"]) == 4

        items = await mcp_server.get_location_inventory(seeded_database, "fridge")
        assert [item["drug_id"] for item in items["data"]] == ["D003"]

    @pytest.mark.asyncio
    async def test_stock_alerts(self, seeded_database):
        result = await mcp_server.get_stock_alerts(seeded_database)
        assert result["success"]
        assert len(result["data"]["low_stock"]) == 2
        assert len(result["data"]["expired"]) == 1

    @pytest.mark.asyncio
    async def test_update_inventory(self, seeded_database):
        result = await mcp_server.update_inventory(seeded_database, "Morphine 10mg", "ICU-Shelf-A", 25, "P200")
        assert result["success"]
        assert result["data"]["change"] == 25
        assert result["data"]["transaction"]["action"] == "RECEIVE"
        assert "alert" not in result["data"]

        depleted = await mcp_server.update_inventory(seeded_database, "Propofol", "ER-Cabinet-B", 0, "P200")
        assert depleted["data"]["alert"].startswith("Stock depleted")

    @pytest.mark.asyncio
    async def test_update_inventory_not_found(self, seeded_database):
        result = await mcp_server.update_inventory(seeded_database, "Propofol", "Basement", 5, "P200")
        assert not result["success"]
        assert "suggestions" in result["data"]

    @pytest.mark.asyncio
    async def test_fefo(self, seeded_database):
        result = await mcp_server.get_fefo_recommendations(seeded_database, "Propofol")
        batches = result["data"]["D001"]
        assert [b["batch_lot"] for b in batches] == ["LOT-A2", "LOT-A1"]


class TestForecastTools:
    """Test forecasting tools."""

    @pytest.mark.asyncio
    async def test_forecast_demand(self, seeded_database):
        result = await mcp_server.forecast_demand(seeded_database, "Propofol")
        data = result["data"]
        assert result["success"]
        assert data["current_stock"] == 135
        assert data["total_forecast"] == pytest.approx(8 * 6.8)
        assert data["status"] == "adequate"

    @pytest.mark.asyncio
    async def test_predict_stockout(self, seeded_database):
        result = await mcp_server.predict_stockout_date(seeded_database, "Propofol")
        assert result["success"]
        assert result["data"]["drug_id"] == "D001"
        # 240 units over a 29 day span against 135 on hand
        assert result["data"]["days_until_stockout"] == 16

    @pytest.mark.asyncio
    async def test_safety_stock(self, seeded_database):
        result = await mcp_server.calculate_safety_stock(seeded_database, "Insulin Glargine", lead_time_days=9)
        assert result["success"]
        # Constant usage has zero variability
        assert result["data"]["recommended_safety_stock"] == 0
        assert result["data"]["policy"]["lead_time_days"] == 9

    @pytest.mark.asyncio
    async def test_safety_stock_rejects_bad_policy(self, seeded_database):
        result = await mcp_server.calculate_safety_stock(seeded_database, "Insulin Glargine", lead_time_days=45)
        assert not result["success"]
        assert "lead_time_days" in result["message"]

    @pytest.mark.asyncio
    async def test_seasonality_without_enough_history(self, seeded_database):
        result = await mcp_server.detect_seasonal_patterns(seeded_database, "Paracetamol")
        assert result["success"]
        assert result["data"]["insufficient_data"]


class TestRiskTools:
    """Test stockout risk and reorder tools."""

    @pytest.mark.asyncio
    async def test_risk_report(self, seeded_database):
        result = await mcp_server.get_stockout_risk_report(seeded_database)
        items = result["data"]["items"]
        assert items[0]["drug_id"] == "D002"
        assert items[0]["urgency"] == "CRITICAL"
        assert result["data"]["summary"]["CRITICAL"] >= 1

    @pytest.mark.asyncio
    async def test_risk_report_by_location(self, seeded_database):
        result = await mcp_server.get_stockout_risk_report(seeded_database, location="Pharmacy-Main")
        assert result["data"]["items"] == []

    @pytest.mark.asyncio
    async def test_reorder_recommendations(self, seeded_database):
        result = await mcp_server.get_reorder_recommendations(seeded_database, pack_size=25)
        orders = result["data"]["orders"]
        assert orders
        assert all(order["recommended_qty"] % 25 == 0 for order in orders)
        assert all(order["urgency"] in ("CRITICAL", "HIGH", "MEDIUM") for order in orders)

    @pytest.mark.asyncio
    async def test_usage_stats(self, seeded_database):
        result = await mcp_server.get_usage_stats(seeded_database, "D003")
        assert result["data"]["total_used"] == 90

    @pytest.mark.asyncio
    async def test_usage_stats_ignores_similar_ids(self, database, fixed_now):
        await database.add_transaction(Transaction("TXN-1", fixed_now, "N100", "D1", TransactionAction.USE, -3))
        await database.add_transaction(Transaction("TXN-2", fixed_now, "N100", "D10", TransactionAction.USE, -300))

        result = await mcp_server.get_usage_stats(database, "D1")
        assert result["data"]["total_used"] == 3


class TestServerDispatch:
    """Test the MCP request handlers."""

    @pytest.mark.asyncio
    async def test_list_tools(self):
        tools = await mcp_server.handle_list_tools()
        names = {tool.name for tool in tools}
        assert {"lookup_inventory", "forecast_demand", "get_stockout_risk_report"} <= names

    @pytest.mark.asyncio
    async def test_call_tool(self, seeded_database, monkeypatch):
        monkeypatch.setattr(mcp_server, "_database", seeded_database)

        [content] = await mcp_server.handle_call_tool("lookup_inventory", {"drug_name": "insulin glargine"})
        payload = json.loads(content.text)
        assert payload["success"]
        assert payload["data"]["items"][0]["category"] == "refrigerated"

    @pytest.mark.asyncio
    async def test_unknown_tool(self, seeded_database, monkeypatch):
        monkeypatch.setattr(mcp_server, "_database", seeded_database)

        [content] = await mcp_server.handle_call_tool("drop_tables", {})
        assert json.loads(content.text) == {"success": False, "message": "Unknown tool: drop_tables"}

    @pytest.mark.asyncio
    async def test_missing_argument(self, seeded_database, monkeypatch):
        monkeypatch.setattr(mcp_server, "_database", seeded_database)

        [content] = await mcp_server.handle_call_tool("forecast_demand", {})
        assert not json.loads(content.text)["success"]
