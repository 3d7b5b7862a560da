"""
Pharmacy Inventory MCP Server.

Exposes inventory lookups, stock updates, demand forecasting and stockout risk
decisions as MCP tools. Each tool loads records from the CSV store, runs the
pure enrichment / forecasting / risk functions and returns a JSON payload of
the form ``{"success": ..., "message": ..., "data": ...}``.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import mcp.server.stdio
from mcp import types as mcp_types
from mcp.server.lowlevel import NotificationOptions, Server
from mcp.server.models import InitializationOptions

from pharmacy_inventory.config import DATA_PATH, InventoryPolicy, setup_logging
from pharmacy_inventory.database.inventory_database import InventoryDatabase
from pharmacy_inventory.database.models import Transaction
from pharmacy_inventory.database.record_store import RecordStore
from pharmacy_inventory.enrichment import EnrichedItem
from pharmacy_inventory.errors import NotFoundError
from pharmacy_inventory.forecasting import (
    DEFAULT_FORECAST_DAYS,
    FORECAST_HISTORY_DAYS,
    SEASONALITY_HISTORY_DAYS,
    calculate_safety_stock as compute_safety_stock,
    detect_seasonal_patterns as compute_seasonal_patterns,
    estimate_demand_std_dev,
    extract_daily_usage,
    generate_forecast,
    predict_stockout_date as compute_stockout_date,
)
from pharmacy_inventory.fuzzy_match import find_best_matches
from pharmacy_inventory.risk_engine import (
    Urgency,
    assess_inventory_risk,
    fefo_order,
    review_safety_stock,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "pharmacy-inventory-mcp-server"
SERVER_VERSION = "1.0.0"

# Configuration constants
DEFAULT_EXPIRY_WINDOW_DAYS = 30
DRUG_HISTORY_DAYS = 90
REORDER_URGENCIES = (Urgency.CRITICAL, Urgency.HIGH, Urgency.MEDIUM)

_database: Optional[InventoryDatabase] = None


def get_database() -> InventoryDatabase:
    """Shared database over ``PHARMACY_DATA_PATH``, created on first use."""
    global _database
    if _database is None:
        _database = InventoryDatabase(RecordStore(DATA_PATH))
    return _database


def _policy(db: InventoryDatabase, **overrides) -> InventoryPolicy:
    values = db.policy.to_dict()
    values.update({key: value for key, value in overrides.items() if value is not None})
    return InventoryPolicy(**values)


def _not_found(e: NotFoundError) -> Dict[str, Any]:
    return {
        "success": False,
        "message": str(e),
        "data": {"suggestions": e.suggestions}
    }


async def _resolve_drug(db: InventoryDatabase, query: str,
                        now: datetime) -> Tuple[str, str, List[EnrichedItem]]:
    """Best-matching drug for a query: (drug_id, drug_name, batches)."""
    items = await db.require_item(query, now)
    ranked = find_best_matches(query, [item.drug_name for item in items], threshold=0.0, limit=1)
    best_name = ranked[0][0] if ranked else items[0].drug_name
    batches = [item for item in items if item.drug_name == best_name]
    return batches[0].drug_id, best_name, batches


async def _drug_transactions(db: InventoryDatabase, drug_id: str, days: int,
                             now: datetime) -> List[Transaction]:
    transactions = await db.load_transactions(days, now)
    return [txn for txn in transactions if txn.drug_id == drug_id]


# --- Inventory tools ---

async def lookup_inventory(db: InventoryDatabase, drug_name: str) -> Dict[str, Any]:
    """Find a drug by (fuzzy) name or id across all locations."""
    try:
        result = await db.search_inventory(drug_name)
        if not result.found:
            return {
                "success": False,
                "message": f"Drug '{drug_name}' not found in inventory",
                "data": result.to_dict()
            }
        return {
            "success": True,
            "message": f"Found {len(result.items)} batches matching '{drug_name}'",
            "data": result.to_dict()
        }
    except Exception as e:
        logger.error(f"Error in lookup_inventory: {e}")
        return {"success": False, "message": f"Error looking up inventory: {e}"}


async def get_location_inventory(db: InventoryDatabase, location: Optional[str] = None) -> Dict[str, Any]:
    """Items at a location, or a summary of every location."""
    try:
        if location:
            items = await db.get_inventory_by_location(location)
            return {
                "success": True,
                "message": f"Found {len(items)} items at locations matching '{location}'",
                "data": [item.to_dict() for item in items]
            }
        summaries = await db.get_all_locations()
        return {
            "success": True,
            "message": f"Found {len(summaries)} locations",
            "data": [summary.to_dict() for summary in summaries]
        }
    except Exception as e:
        logger.error(f"Error in get_location_inventory: {e}")
        return {"success": False, "message": f"Error reading location inventory: {e}"}


async def get_stock_alerts(db: InventoryDatabase, expiry_window_days: int = DEFAULT_EXPIRY_WINDOW_DAYS) -> Dict[str, Any]:
    """Low stock, expiring and expired items."""
    try:
        now = db.clock()
        low_stock = await db.get_low_stock_items(now)
        expiring = await db.get_expiring_items(expiry_window_days, now)
        expired = await db.get_expired_items(now)
        return {
            "success": True,
            "message": (
                f"{len(low_stock)} low stock, {len(expiring)} expiring within "
                f"{expiry_window_days} days, {len(expired)} expired"
            ),
            "data": {
                "low_stock": [item.to_dict() for item in low_stock],
                "expiring": [item.to_dict() for item in expiring],
                "expired": [item.to_dict() for item in expired]
            }
        }
    except Exception as e:
        logger.error(f"Error in get_stock_alerts: {e}")
        return {"success": False, "message": f"Error building stock alerts: {e}"}


async def update_inventory(db: InventoryDatabase, drug_name: str, location: str, new_quantity: int,
                           user_id: str, reason: Optional[str] = None,
                           batch_lot: Optional[str] = None) -> Dict[str, Any]:
    """Set a batch to a new absolute quantity and record the transaction."""
    try:
        adjustment = await db.adjust_stock(drug_name, location, new_quantity, user_id, reason, batch_lot)
        item = adjustment.item
        data = adjustment.to_dict()
        if item.qty_on_hand == 0:
            data["alert"] = "Stock depleted - immediate reorder required"
        elif item.qty_on_hand < item.safety_stock:
            data["alert"] = "Below safety stock - consider reordering"
        return {
            "success": True,
            "message": f"Updated {item.drug_name} at {item.location}: {adjustment.qty_before} -> {item.qty_on_hand}",
            "data": data
        }
    except NotFoundError as e:
        return _not_found(e)
    except Exception as e:
        logger.error(f"Error in update_inventory: {e}")
        return {"success": False, "message": f"Error updating inventory: {e}"}


async def get_fefo_recommendations(db: InventoryDatabase, drug_name: Optional[str] = None) -> Dict[str, Any]:
    """Batches to use first, grouped by drug."""
    try:
        now = db.clock()
        if drug_name:
            _, _, items = await _resolve_drug(db, drug_name, now)
        else:
            items = await db.load_enriched_inventory(now)
        ordered = fefo_order(items)
        return {
            "success": True,
            "message": f"FEFO order for {len(ordered)} drugs",
            "data": {drug_id: [entry.to_dict() for entry in entries] for drug_id, entries in ordered.items()}
        }
    except NotFoundError as e:
        return _not_found(e)
    except Exception as e:
        logger.error(f"Error in get_fefo_recommendations: {e}")
        return {"success": False, "message": f"Error building FEFO order: {e}"}


# --- Forecasting tools ---

async def forecast_demand(db: InventoryDatabase, drug_name: str,
                          forecast_days: int = DEFAULT_FORECAST_DAYS) -> Dict[str, Any]:
    """Day-by-day demand forecast for one drug."""
    try:
        now = db.clock()
        drug_id, name, batches = await _resolve_drug(db, drug_name, now)
        transactions = await _drug_transactions(db, drug_id, FORECAST_HISTORY_DAYS, now)
        result = generate_forecast(
            name,
            sum(batch.qty_on_hand for batch in batches),
            max(batch.avg_daily_use for batch in batches),
            transactions,
            forecast_days,
            now
        )
        return {
            "success": True,
            "message": result.recommendation,
            "data": result.to_dict()
        }
    except NotFoundError as e:
        return _not_found(e)
    except Exception as e:
        logger.error(f"Error in forecast_demand: {e}")
        return {"success": False, "message": f"Error forecasting demand: {e}"}


async def predict_stockout_date(db: InventoryDatabase, drug_name: str) -> Dict[str, Any]:
    """Predicted stockout date for one drug."""
    try:
        now = db.clock()
        drug_id, name, batches = await _resolve_drug(db, drug_name, now)
        transactions = await _drug_transactions(db, drug_id, DRUG_HISTORY_DAYS, now)
        prediction = compute_stockout_date(
            sum(batch.qty_on_hand for batch in batches),
            transactions,
            max(batch.avg_daily_use for batch in batches),
            now
        )
        if prediction.stockout_date is None:
            message = f"No stockout predicted for {name}: {prediction.method}"
        else:
            message = f"{name} estimated to run out in {prediction.days_until_stockout} days"
        return {
            "success": True,
            "message": message,
            "data": {"drug_id": drug_id, "drug_name": name, **prediction.to_dict()}
        }
    except NotFoundError as e:
        return _not_found(e)
    except Exception as e:
        logger.error(f"Error in predict_stockout_date: {e}")
        return {"success": False, "message": f"Error predicting stockout: {e}"}


async def calculate_safety_stock(db: InventoryDatabase, drug_name: str,
                                 lead_time_days: Optional[int] = None,
                                 service_level: Optional[float] = None) -> Dict[str, Any]:
    """Recommended safety stock per batch of one drug."""
    try:
        now = db.clock()
        policy = _policy(db, lead_time_days=lead_time_days, service_level=service_level)
        drug_id, name, batches = await _resolve_drug(db, drug_name, now)
        transactions = await _drug_transactions(db, drug_id, FORECAST_HISTORY_DAYS, now)
        daily_usage = extract_daily_usage(transactions, FORECAST_HISTORY_DAYS, now)
        std_dev = estimate_demand_std_dev(daily_usage.tolist()) if daily_usage.sum() > 0 else None

        reviews = [review_safety_stock(batch, policy, demand_std_dev=std_dev) for batch in batches]
        recommended = compute_safety_stock(
            max(batch.avg_daily_use for batch in batches),
            policy.lead_time_days,
            policy.service_level,
            std_dev
        )
        return {
            "success": True,
            "message": f"Recommended safety stock for {name}: {recommended} units",
            "data": {
                "drug_id": drug_id,
                "drug_name": name,
                "recommended_safety_stock": recommended,
                "demand_std_dev": std_dev,
                "policy": policy.to_dict(),
                "batches": [review.to_dict() for review in reviews]
            }
        }
    except NotFoundError as e:
        return _not_found(e)
    except Exception as e:
        logger.error(f"Error in calculate_safety_stock: {e}")
        return {"success": False, "message": f"Error calculating safety stock: {e}"}


async def detect_seasonal_patterns(db: InventoryDatabase, drug_name: str,
                                   period_days: int = SEASONALITY_HISTORY_DAYS) -> Dict[str, Any]:
    """Weekly or monthly usage seasonality for one drug."""
    try:
        now = db.clock()
        drug_id, name, _ = await _resolve_drug(db, drug_name, now)
        transactions = await _drug_transactions(db, drug_id, period_days, now)
        result = compute_seasonal_patterns(transactions, period_days, now)
        if result.insufficient_data:
            message = f"Insufficient usage history to detect seasonality for {name}"
        elif result.has_seasonality:
            message = f"{result.pattern.value.capitalize()} seasonality detected for {name}"
        else:
            message = f"No seasonality detected for {name}"
        return {
            "success": True,
            "message": message,
            "data": {"drug_id": drug_id, "drug_name": name, **result.to_dict()}
        }
    except NotFoundError as e:
        return _not_found(e)
    except Exception as e:
        logger.error(f"Error in detect_seasonal_patterns: {e}")
        return {"success": False, "message": f"Error detecting seasonality: {e}"}


# --- Risk tools ---

async def get_stockout_risk_report(db: InventoryDatabase, location: Optional[str] = None,
                                   lead_time_days: Optional[int] = None) -> Dict[str, Any]:
    """Items at risk of running out before the next delivery, most urgent first."""
    try:
        now = db.clock()
        policy = _policy(db, lead_time_days=lead_time_days)
        if location:
            items = await db.get_inventory_by_location(location, now)
        else:
            items = await db.load_enriched_inventory(now)
        transactions = await db.load_transactions(FORECAST_HISTORY_DAYS, now)
        assessments = assess_inventory_risk(items, transactions, policy, now)

        by_urgency = {urgency.value: 0 for urgency in Urgency}
        for assessment in assessments:
            by_urgency[assessment.urgency.value] += 1

        return {
            "success": True,
            "message": f"{len(assessments)} items at risk of stockout",
            "data": {
                "policy": policy.to_dict(),
                "summary": by_urgency,
                "items": [assessment.to_dict() for assessment in assessments]
            }
        }
    except Exception as e:
        logger.error(f"Error in get_stockout_risk_report: {e}")
        return {"success": False, "message": f"Error building stockout risk report: {e}"}


async def get_reorder_recommendations(db: InventoryDatabase, target_days_of_supply: Optional[int] = None,
                                      pack_size: Optional[int] = None) -> Dict[str, Any]:
    """Pack-rounded order quantities for items with at least MEDIUM urgency."""
    try:
        now = db.clock()
        policy = _policy(db, target_days_of_supply=target_days_of_supply, pack_size=pack_size)
        items = await db.load_enriched_inventory(now)
        transactions = await db.load_transactions(FORECAST_HISTORY_DAYS, now)
        orders = [
            assessment for assessment in assess_inventory_risk(items, transactions, policy, now)
            if assessment.urgency in REORDER_URGENCIES and assessment.recommended_qty > 0
        ]
        return {
            "success": True,
            "message": f"{len(orders)} items to reorder, {sum(o.recommended_qty for o in orders)} units in total",
            "data": {
                "policy": policy.to_dict(),
                "orders": [order.to_dict() for order in orders]
            }
        }
    except Exception as e:
        logger.error(f"Error in get_reorder_recommendations: {e}")
        return {"success": False, "message": f"Error building reorder recommendations: {e}"}


async def get_usage_stats(db: InventoryDatabase, drug_id: str, days: int = FORECAST_HISTORY_DAYS) -> Dict[str, Any]:
    try:
        stats = await db.get_drug_usage_stats(drug_id, days)
        return {
            "success": True,
            "message": f"{stats.total_used} units used over {days} days",
            "data": stats.to_dict()
        }
    except Exception as e:
        logger.error(f"Error in get_usage_stats: {e}")
        return {"success": False, "message": f"Error reading usage stats: {e}"}


# --- MCP Server Setup ---
server = Server(SERVER_NAME)

DRUG_NAME_PROPERTY = {
    "type": "string",
    "description": "Drug name (fuzzy matched) or drug id"
}


@server.list_tools()
async def handle_list_tools() -> List[mcp_types.Tool]:
    """List available pharmacy inventory tools."""
    return [
        mcp_types.Tool(
            name="lookup_inventory",
            description="Find a drug by name or id and show stock, status and expiry per batch",
            inputSchema={
                "type": "object",
                "properties": {"drug_name": DRUG_NAME_PROPERTY},
                "required": ["drug_name"]
            }
        ),
        mcp_types.Tool(
            name="get_location_inventory",
            description="List items at a storage location, or summarise all locations",
            inputSchema={
                "type": "object",
                "properties": {
                    "location": {
                        "type": "string",
                        "description": "Optional location filter (case-insensitive substring)"
                    }
                }
            }
        ),
        mcp_types.Tool(
            name="get_stock_alerts",
            description="Low stock, expiring and expired items",
            inputSchema={
                "type": "object",
                "properties": {
                    "expiry_window_days": {
                        "type": "integer",
                        "description": "Expiry window in days (default: 30)",
                        "default": DEFAULT_EXPIRY_WINDOW_DAYS
                    }
                }
            }
        ),
        mcp_types.Tool(
            name="update_inventory",
            description="Set a batch to a new absolute quantity and log the transaction",
            inputSchema={
                "type": "object",
                "properties": {
                    "drug_name": {"type": "string", "description": "Exact drug name"},
                    "location": {"type": "string", "description": "Exact storage location"},
                    "new_quantity": {"type": "integer", "minimum": 0, "description": "New quantity (absolute)"},
                    "user_id": {"type": "string", "description": "Employee id making the change"},
                    "reason": {"type": "string", "description": "Optional reason for the update"},
                    "batch_lot": {"type": "string", "description": "Optional batch to update"}
                },
                "required": ["drug_name", "location", "new_quantity", "user_id"]
            }
        ),
        mcp_types.Tool(
            name="get_fefo_recommendations",
            description="First-expired-first-out batch order, optionally for one drug",
            inputSchema={
                "type": "object",
                "properties": {"drug_name": DRUG_NAME_PROPERTY}
            }
        ),
        mcp_types.Tool(
            name="forecast_demand",
            description="Day-of-week aware demand forecast with trend adjustment",
            inputSchema={
                "type": "object",
                "properties": {
                    "drug_name": DRUG_NAME_PROPERTY,
                    "forecast_days": {
                        "type": "integer",
                        "description": "Forecast horizon in days (default: 7)",
                        "default": DEFAULT_FORECAST_DAYS
                    }
                },
                "required": ["drug_name"]
            }
        ),
        mcp_types.Tool(
            name="predict_stockout_date",
            description="Predict when a drug runs out from its usage history",
            inputSchema={
                "type": "object",
                "properties": {"drug_name": DRUG_NAME_PROPERTY},
                "required": ["drug_name"]
            }
        ),
        mcp_types.Tool(
            name="calculate_safety_stock",
            description="Recommended safety stock from usage variability, lead time and service level",
            inputSchema={
                "type": "object",
                "properties": {
                    "drug_name": DRUG_NAME_PROPERTY,
                    "lead_time_days": {"type": "integer", "minimum": 1, "maximum": 30},
                    "service_level": {"type": "number", "enum": [0.90, 0.95, 0.98, 0.99]}
                },
                "required": ["drug_name"]
            }
        ),
        mcp_types.Tool(
            name="detect_seasonal_patterns",
            description="Detect weekly or monthly usage seasonality",
            inputSchema={
                "type": "object",
                "properties": {
                    "drug_name": DRUG_NAME_PROPERTY,
                    "period_days": {
                        "type": "integer",
                        "description": "History window in days (default: 90)",
                        "default": SEASONALITY_HISTORY_DAYS
                    }
                },
                "required": ["drug_name"]
            }
        ),
        mcp_types.Tool(
            name="get_stockout_risk_report",
            description="Risk-scored list of items likely to run out before replenishment",
            inputSchema={
                "type": "object",
                "properties": {
                    "location": {"type": "string", "description": "Optional location filter"},
                    "lead_time_days": {"type": "integer", "minimum": 1, "maximum": 30}
                }
            }
        ),
        mcp_types.Tool(
            name="get_reorder_recommendations",
            description="Pack-rounded order quantities for at-risk items",
            inputSchema={
                "type": "object",
                "properties": {
                    "target_days_of_supply": {"type": "integer", "minimum": 1},
                    "pack_size": {"type": "integer", "minimum": 1}
                }
            }
        ),
        mcp_types.Tool(
            name="get_usage_stats",
            description="Units used and received for a drug over a trailing window",
            inputSchema={
                "type": "object",
                "properties": {
                    "drug_id": {"type": "string"},
                    "days": {"type": "integer", "default": FORECAST_HISTORY_DAYS}
                },
                "required": ["drug_id"]
            }
        )
    ]


@server.call_tool()
async def handle_call_tool(name: str, arguments: dict) -> List[mcp_types.TextContent]:
    """Handle tool calls for pharmacy inventory operations."""
    try:
        db = get_database()
        arguments = arguments or {}

        if name == "lookup_inventory":
            result = await lookup_inventory(db, arguments["drug_name"])

        elif name == "get_location_inventory":
            result = await get_location_inventory(db, arguments.get("location"))

        elif name == "get_stock_alerts":
            result = await get_stock_alerts(db, arguments.get("expiry_window_days", DEFAULT_EXPIRY_WINDOW_DAYS))

        elif name == "update_inventory":
            result = await update_inventory(
                db,
                arguments["drug_name"],
                arguments["location"],
                int(arguments["new_quantity"]),
                arguments["user_id"],
                arguments.get("reason"),
                arguments.get("batch_lot")
            )

        elif name == "get_fefo_recommendations":
            result = await get_fefo_recommendations(db, arguments.get("drug_name"))

        elif name == "forecast_demand":
            result = await forecast_demand(db, arguments["drug_name"],
                                           arguments.get("forecast_days", DEFAULT_FORECAST_DAYS))

        elif name == "predict_stockout_date":
            result = await predict_stockout_date(db, arguments["drug_name"])

        elif name == "calculate_safety_stock":
            result = await calculate_safety_stock(
                db,
                arguments["drug_name"],
                arguments.get("lead_time_days"),
                arguments.get("service_level")
            )

        elif name == "detect_seasonal_patterns":
            result = await detect_seasonal_patterns(db, arguments["drug_name"],
                                                    arguments.get("period_days", SEASONALITY_HISTORY_DAYS))

        elif name == "get_stockout_risk_report":
            result = await get_stockout_risk_report(db, arguments.get("location"), arguments.get("lead_time_days"))

        elif name == "get_reorder_recommendations":
            result = await get_reorder_recommendations(
                db,
                arguments.get("target_days_of_supply"),
                arguments.get("pack_size")
            )

        elif name == "get_usage_stats":
            result = await get_usage_stats(db, arguments["drug_id"], arguments.get("days", FORECAST_HISTORY_DAYS))

        else:
            result = {
                "success": False,
                "message": f"Unknown tool: {name}"
            }

        return [mcp_types.TextContent(
            type="text",
            text=json.dumps(result, indent=2, default=str)
        )]

    except Exception as e:
        logger.error(f"Error in handle_call_tool for {name}: {e}")
        return [mcp_types.TextContent(
            type="text",
            text=json.dumps({
                "success": False,
                "message": f"Error executing {name}: {str(e)}"
            }, indent=2)
        )]


async def main():
    """Run the Pharmacy Inventory MCP Server over stdin/stdout."""
    setup_logging()
    logger.info(f"Starting {SERVER_NAME} with data path {DATA_PATH}")
    async with mcp.server.stdio.stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            InitializationOptions(
                server_name=SERVER_NAME,
                server_version=SERVER_VERSION,
                capabilities=server.get_capabilities(
                    notification_options=NotificationOptions(),
                    experimental_capabilities={},
                ),
            ),
        )


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
