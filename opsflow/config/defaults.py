"""Built-in workflows, approval thresholds, exception rules and pipelines.

``Orchestrator.initialize_defaults`` seeds an empty state store from these
tables. Existing records are never overwritten.
"""

from decimal import Decimal
from typing import Any

from opsflow.enums import ResolutionStrategy, TriggerType, WorkflowType
from opsflow.models.domain import PipelineDefinition, PipelineStage

DEFAULT_WORKFLOWS: list[dict[str, Any]] = [
    {
        "name": "Daily Demand Forecasting",
        "workflow_type": WorkflowType.DEMAND_FORECASTING,
        "description": "Generate daily demand forecasts for all active products",
        "trigger_type": TriggerType.SCHEDULED,
        "cron_schedule": "0 6 * * *",
    },
    {
        "name": "Production Planning",
        "workflow_type": WorkflowType.PRODUCTION_PLANNING,
        "description": "Create production plans from forecasts",
        "trigger_type": TriggerType.SCHEDULED,
        "cron_schedule": "0 7 * * *",
    },
    {
        "name": "Material Requirements Planning",
        "workflow_type": WorkflowType.MATERIAL_REQUIREMENTS,
        "description": "Calculate material needs and generate suggested POs",
        "trigger_type": TriggerType.SCHEDULED,
        "cron_schedule": "0 8 * * *",
        "requires_approval": True,
        "approval_entity_type": "purchase_order",
        "auto_approve_threshold": Decimal("1000"),
    },
    {
        "name": "Procurement Processing",
        "workflow_type": WorkflowType.PROCUREMENT,
        "description": "Convert approved suggested POs to actual POs",
        "trigger_type": TriggerType.EVENT,
        "trigger_events": ["approval_completed"],
    },
    {
        "name": "Inventory Reorder Check",
        "workflow_type": WorkflowType.INVENTORY_REORDER,
        "description": "Check inventory levels and trigger reorders",
        "trigger_type": TriggerType.THRESHOLD,
        "threshold_config": {"type": "inventory_below"},
        "requires_approval": True,
        "approval_entity_type": "purchase_order",
        "auto_approve_threshold": Decimal("500"),
    },
    {
        "name": "Inventory Optimization",
        "workflow_type": WorkflowType.INVENTORY_OPTIMIZATION,
        "description": "Analyze and optimize inventory distribution",
        "trigger_type": TriggerType.SCHEDULED,
        "cron_schedule": "0 2 * * 0",
    },
    {
        "name": "Work Order Generation",
        "workflow_type": WorkflowType.WORK_ORDER_GENERATION,
        "description": "Generate work orders from approved production plans",
        "trigger_type": TriggerType.EVENT,
        "trigger_events": ["production_planning_completed"],
    },
    {
        "name": "Production Scheduling",
        "workflow_type": WorkflowType.PRODUCTION_SCHEDULING,
        "description": "Schedule work orders based on capacity and materials",
        "trigger_type": TriggerType.SCHEDULED,
        "cron_schedule": "0 5 * * *",
    },
    {
        "name": "Order Fulfillment",
        "workflow_type": WorkflowType.ORDER_FULFILLMENT,
        "description": "Process and fulfill confirmed orders",
        "trigger_type": TriggerType.EVENT,
        "trigger_events": ["order_confirmed"],
    },
    {
        "name": "Shipment Tracking",
        "workflow_type": WorkflowType.SHIPMENT_TRACKING,
        "description": "Track in-transit shipments and detect delays",
        "trigger_type": TriggerType.SCHEDULED,
        "cron_schedule": "0 */2 * * *",
    },
    {
        "name": "Supplier Performance Review",
        "workflow_type": WorkflowType.SUPPLIER_MANAGEMENT,
        "description": "Calculate supplier performance metrics",
        "trigger_type": TriggerType.SCHEDULED,
        "cron_schedule": "0 0 1 * *",
    },
    {
        "name": "Invoice Matching",
        "workflow_type": WorkflowType.INVOICE_MATCHING,
        "description": "Match vendor invoices to purchase orders",
        "trigger_type": TriggerType.EVENT,
        "trigger_events": ["invoice_received"],
    },
    {
        "name": "Payment Processing",
        "workflow_type": WorkflowType.PAYMENT_PROCESSING,
        "description": "Process approved invoices for payment",
        "trigger_type": TriggerType.SCHEDULED,
        "cron_schedule": "0 10 * * 1,3,5",
        "requires_approval": True,
        "approval_entity_type": "payment",
        "auto_approve_threshold": Decimal("2000"),
    },
    {
        "name": "Exception Handling",
        "workflow_type": WorkflowType.EXCEPTION_HANDLING,
        "description": "Triage and resolve open exceptions",
        "trigger_type": TriggerType.THRESHOLD,
        "threshold_config": {"type": "exception_count", "threshold": 3},
    },
    # Pipeline-only stages: dispatched by order_to_cash and inventory_optimization
    {
        "name": "Freight Procurement",
        "workflow_type": WorkflowType.FREIGHT_PROCUREMENT,
        "description": "Request carrier quotes and book freight for fulfilled orders",
        "trigger_type": TriggerType.MANUAL,
        "requires_approval": True,
        "approval_entity_type": "purchase_order",
    },
    {
        "name": "Inventory Transfer",
        "workflow_type": WorkflowType.INVENTORY_TRANSFER,
        "description": "Move stock between warehouses to cover shortfalls",
        "trigger_type": TriggerType.MANUAL,
        "requires_approval": True,
        "approval_entity_type": "inventory_transfer",
    },
]

DEFAULT_THRESHOLDS: list[dict[str, Any]] = [
    {
        "name": "Purchase Order Approval",
        "entity_type": "purchase_order",
        "auto_approve_max_amount": Decimal("500"),
        "level1_max_amount": Decimal("5000"),
        "level2_max_amount": Decimal("25000"),
        "level3_max_amount": Decimal("100000"),
    },
    {
        "name": "Payment Approval",
        "entity_type": "payment",
        "auto_approve_max_amount": Decimal("1000"),
        "level1_max_amount": Decimal("10000"),
        "level2_max_amount": Decimal("50000"),
        "level3_max_amount": Decimal("200000"),
    },
    {
        "name": "Inventory Transfer Approval",
        "entity_type": "inventory_transfer",
        "auto_approve_max_amount": Decimal("10000"),
        "level1_max_amount": Decimal("50000"),
        "level2_max_amount": Decimal("100000"),
        "level3_max_amount": Decimal("500000"),
    },
]

DEFAULT_EXCEPTION_RULES: list[dict[str, Any]] = [
    {
        "name": "Minor price variance",
        "description": "Small invoice/PO price differences are accepted automatically",
        "exception_type": "price_variance",
        "resolution_strategy": ResolutionStrategy.AUTO_RESOLVE,
        "auto_resolution_action": "accept_variance",
        "priority": 50,
    },
    {
        "name": "Shipment delay",
        "description": "Late shipments go to the logistics team",
        "exception_type": "shipment_delay",
        "resolution_strategy": ResolutionStrategy.ROUTE_TO_HUMAN,
        "notify_roles": ["ops"],
        "priority": 100,
    },
    {
        "name": "Stockout",
        "description": "Stockouts are escalated immediately",
        "exception_type": "stockout",
        "resolution_strategy": ResolutionStrategy.ESCALATE,
        "notify_roles": ["ops", "admin"],
        "priority": 10,
    },
    {
        "name": "Quality hold",
        "description": "Quality holds are logged and production continues",
        "exception_type": "quality_hold",
        "resolution_strategy": ResolutionStrategy.NOTIFY_AND_CONTINUE,
        "notify_roles": ["quality"],
        "priority": 100,
    },
]


def _stages(*stages: tuple[WorkflowType, set[int]]) -> list[PipelineStage]:
    return [PipelineStage(workflow_type=workflow_type, depends_on=deps) for workflow_type, deps in stages]


DEFAULT_PIPELINES: list[PipelineDefinition] = [
    PipelineDefinition(
        id="plan_to_produce",
        name="Plan-to-Produce",
        description="Forecast, production plan, MRP, work orders, scheduling",
        stages=_stages(
            (WorkflowType.DEMAND_FORECASTING, set()),
            (WorkflowType.PRODUCTION_PLANNING, {0}),
            (WorkflowType.MATERIAL_REQUIREMENTS, {1}),
            (WorkflowType.WORK_ORDER_GENERATION, {1}),
            (WorkflowType.PRODUCTION_SCHEDULING, {3}),
        ),
    ),
    PipelineDefinition(
        id="procure_to_pay",
        name="Procure-to-Pay",
        description="MRP, procurement, invoice matching, payment",
        stages=_stages(
            (WorkflowType.MATERIAL_REQUIREMENTS, set()),
            (WorkflowType.PROCUREMENT, {0}),
            (WorkflowType.INVOICE_MATCHING, {1}),
            (WorkflowType.PAYMENT_PROCESSING, {2}),
        ),
    ),
    PipelineDefinition(
        id="order_to_cash",
        name="Order-to-Cash",
        description="Order fulfillment, then freight and tracking in parallel",
        stages=_stages(
            (WorkflowType.ORDER_FULFILLMENT, set()),
            (WorkflowType.FREIGHT_PROCUREMENT, {0}),
            (WorkflowType.SHIPMENT_TRACKING, {0}),
        ),
    ),
    PipelineDefinition(
        id="inventory_optimization",
        name="Inventory Optimization",
        description="Reorder check and transfers, then optimization analysis",
        stages=_stages(
            (WorkflowType.INVENTORY_REORDER, set()),
            (WorkflowType.INVENTORY_TRANSFER, set()),
            (WorkflowType.INVENTORY_OPTIMIZATION, {0, 1}),
        ),
    ),
    PipelineDefinition(
        id="daily_operations",
        name="Daily Operations",
        description="Complete daily cycle: forecast, plan, fulfill, track, reconcile",
        stages=_stages(
            (WorkflowType.DEMAND_FORECASTING, set()),
            (WorkflowType.PRODUCTION_PLANNING, {0}),
            (WorkflowType.INVENTORY_REORDER, set()),
            (WorkflowType.ORDER_FULFILLMENT, set()),
            (WorkflowType.SHIPMENT_TRACKING, set()),
            (WorkflowType.MATERIAL_REQUIREMENTS, {1}),
            (WorkflowType.WORK_ORDER_GENERATION, {1}),
            (WorkflowType.PRODUCTION_SCHEDULING, {6}),
            (WorkflowType.INVOICE_MATCHING, set()),
            (WorkflowType.EXCEPTION_HANDLING, set()),
        ),
    ),
]
