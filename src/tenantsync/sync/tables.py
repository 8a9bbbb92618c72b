"""Table classification registry.

Static mapping from source-system table names to base-schema table names,
and the isolation strategy used when projecting each table into a tenant
view:

- direct: the table carries its own tenant_id column
- device: rows belong to whichever tenant currently owns the device
  (joined through device_tenants)
- parent: rows inherit tenant ownership from a parent table's tenant_id
- global: shared reference data, visible to every tenant

This registry is also the allow-list for every identifier interpolated into
generated SQL. Table names that are not registered targets are rejected, and
column names must match a strict identifier pattern.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from src.tenantsync.core.errors import InvalidIdentifierError


class FilterStrategy(str, Enum):
    DIRECT = "direct"
    DEVICE = "device"
    PARENT = "parent"
    GLOBAL = "global"


@dataclass(frozen=True)
class TableClassification:
    """Isolation strategy for one target table."""

    strategy: FilterStrategy
    join_column: str | None = None
    parent_table: str | None = None
    foreign_key: str | None = None


# ── Source → Target Mapping ─────────────────────────────────────────────────

TABLE_MAPPING: dict[str, str] = {
    # Organization (id and name only, for id -> name mapping)
    "tenants": "tenants",
    # Operations
    "adhoc_work_orders": "work_orders",
    "work_orders": "work_orders",
    "adhoc_work_order_checklists": "work_order_checklists",
    "attendance_events": "attendance_events",
    "issue_reports": "issue_reports",
    "work_order_categories": "work_order_categories",
    "work_order_services": "work_order_services",
    "ward_cleaning_requests": "ward_cleaning_requests",
    # Scheduling
    "schedules": "schedules",
    "schedule_assignments": "schedule_assignments",
    "schedule_templates": "schedule_templates",
    "staff_availability": "staff_availability",
    "staff_shift_assignments": "staff_shift_assignments",
    "staff_work_schedule": "staff_work_schedule",
    "team_shift_templates": "team_shift_templates",
    "holidays": "holidays",
    "absence_requests": "absence_requests",
    "overtime_requests": "overtime_requests",
    "overtime_reason_codes": "overtime_reason_codes",
    "overtime_factors": "overtime_factors",
    # Devices & IoT
    "devices": "devices",
    "device_measurements": "device_measurements",
    "device_measurements_daily": "device_measurements_daily",
    "device_configs": "device_configs",
    "device_activity": "device_activity",
    "device_admin_cards": "device_admin_cards",
    "device_network_info": "device_network_info",
    "device_tenants": "device_tenants",
    "triggers": "triggers",
    "trigger_executions": "trigger_executions",
    # Locations
    "sites": "sites",
    "rooms": "rooms",
    "zone_categories": "zones",
    "room_status_log": "room_status_log",
    "room_qr_codes": "room_qr_codes",
    "qr_code_scans": "qr_code_scans",
    "qr_landing_page_configs": "qr_landing_page_configs",
    "public_site_info": "public_site_info",
    "optimized_routes": "optimized_routes",
    "route_waypoints": "route_waypoints",
    "route_metrics": "route_metrics",
    # Floorplans
    "zone_floorplans": "zone_floorplans",
    "floorplan_walls": "floorplan_walls",
    "floorplan_furniture": "floorplan_furniture",
    "floorplan_room_assignments": "floorplan_room_assignments",
    "floorplan_drawing_metadata": "floorplan_drawing_metadata",
    "floorplan_user_preferences": "floorplan_user_preferences",
    "drawing_calibration": "drawing_calibration",
    # Checklists
    "checklist_libraries": "checklist_libraries",
    "checklist_categories": "checklist_categories",
    "checklist_completions": "checklist_completions",
    "checklist_library_service_standards": "checklist_library_service_standards",
    # Quality & inspections
    "quality_inspections": "quality_inspections",
    "inspection_rooms": "inspection_rooms",
    "quality_control_checklists": "quality_control_checklists",
    "quality_checklist_key_figures": "quality_checklist_key_figures",
    "insta_quality_levels": "insta_quality_levels",
    "site_quality_profiles": "site_quality_profiles",
    "site_quality_profile_levels": "site_quality_profile_levels",
    "service_standards": "service_standards",
    "service_types": "service_types",
    # Feedback & healthcare
    "room_feedback": "room_feedback",
    "healthcare_metrics": "healthcare_metrics",
    # Users & teams
    "profiles": "profiles",
    "teams": "teams",
    "team_members": "team_members",
    "departments": "departments",
    "user_cards": "user_cards",
    "user_role_categories": "user_role_categories",
    # Customers & contracts
    "customers": "customers",
    "contracts": "contracts",
    "contract_amendments": "contract_amendments",
    "contract_costs": "contract_costs",
    # Pricing & costs
    "base_pricing": "base_pricing",
    "pricing_rules": "pricing_rules",
    "pricing_rule_templates": "pricing_rule_templates",
    "pricing_matrices": "pricing_matrices",
    "pricing_matrix_equipment": "pricing_matrix_equipment",
    "pricing_matrix_materials": "pricing_matrix_materials",
    "pricing_matrix_overhead_factors": "pricing_matrix_overhead_factors",
    "pricing_matrix_overtime_factors": "pricing_matrix_overtime_factors",
    "pricing_matrix_travel": "pricing_matrix_travel",
    "pricing_matrix_workforce_factors": "pricing_matrix_workforce_factors",
    "customer_pricing_overrides": "customer_pricing_overrides",
    "cost_calculation_profiles": "cost_calculation_profiles",
    "cost_profile_equipment": "cost_profile_equipment",
    "cost_profile_materials": "cost_profile_materials",
    "cost_profile_overhead": "cost_profile_overhead",
    "equipment_costs": "equipment_costs",
    "material_costs": "material_costs",
    "overhead_factors": "overhead_factors",
    "workforce_cost_factors": "workforce_cost_factors",
    "travel_costs": "travel_costs",
    # Quotes & invoices
    "quotes": "quotes",
    "quote_line_items": "quote_line_items",
    "quote_pricing": "quote_pricing",
    "quote_scope": "quote_scope",
    "invoices": "invoices",
    "budgets": "budgets",
    "budget_allocations": "budget_allocations",
    # Programs & templates
    "programs": "programs",
    "program_teams": "program_teams",
    "program_template_overrides": "program_template_overrides",
    "tasks": "tasks",
    "task_templates": "task_templates",
    "template_categories": "template_categories",
    "template_category_libraries": "template_category_libraries",
    "template_checklist_mappings": "template_checklist_mappings",
    # Notifications
    "notifications": "notifications",
    "notification_logs": "notification_logs",
    "notification_reads": "notification_reads",
    "notification_team_targets": "notification_team_targets",
    # Chat & messaging
    "chat_messages": "chat_messages",
    "shift_chats": "shift_chats",
    "direct_chats": "direct_chats",
    "direct_messages": "direct_messages",
    "video_sessions": "video_sessions",
    # Settings
    "tenant_settings": "tenant_settings",
    "company_policies": "company_policies",
    "filter_presets": "filter_presets",
}

# ── Classifications ─────────────────────────────────────────────────────────

DEVICE_OWNERSHIP_TABLE = "device_tenants"

DEVICE_BASED_TABLES: dict[str, str] = {
    "devices": "id",
    "device_measurements": "device_id",
    "device_measurements_daily": "device_id",
    "device_configs": "device_id",
    "device_network_info": "device_id",
    "device_activity": "device_id",
}

# table -> (parent_table, foreign_key)
PARENT_RELATION_TABLES: dict[str, tuple[str, str]] = {
    "inspection_rooms": ("quality_inspections", "inspection_id"),
    "quote_line_items": ("quotes", "quote_id"),
    "quote_pricing": ("quotes", "quote_id"),
    "quote_scope": ("quotes", "quote_id"),
    "chat_messages": ("shift_chats", "chat_id"),
    "direct_messages": ("direct_chats", "chat_id"),
    "notification_reads": ("notifications", "notification_id"),
    "notification_team_targets": ("notifications", "notification_id"),
    "floorplan_drawing_metadata": ("zone_floorplans", "floorplan_id"),
    "floorplan_user_preferences": ("zone_floorplans", "floorplan_id"),
    "template_checklist_mappings": ("task_templates", "template_id"),
    "site_quality_profile_levels": ("site_quality_profiles", "profile_id"),
    "budget_allocations": ("budgets", "budget_id"),
    "checklist_library_service_standards": ("checklist_libraries", "checklist_library_id"),
    "cost_profile_equipment": ("cost_calculation_profiles", "cost_profile_id"),
    "cost_profile_materials": ("cost_calculation_profiles", "cost_profile_id"),
    "cost_profile_overhead": ("cost_calculation_profiles", "cost_profile_id"),
    "route_waypoints": ("optimized_routes", "route_id"),
    "route_metrics": ("optimized_routes", "route_id"),
    "trigger_executions": ("triggers", "trigger_id"),
    "pricing_matrix_equipment": ("pricing_matrices", "matrix_id"),
    "pricing_matrix_materials": ("pricing_matrices", "matrix_id"),
    "pricing_matrix_overhead_factors": ("pricing_matrices", "matrix_id"),
    "pricing_matrix_overtime_factors": ("pricing_matrices", "matrix_id"),
    "pricing_matrix_travel": ("pricing_matrices", "matrix_id"),
    "pricing_matrix_workforce_factors": ("pricing_matrices", "matrix_id"),
}

GLOBAL_TABLES: frozenset[str] = frozenset({"tenants", "insta_quality_levels", "service_types"})

# Tables whose upsert conflict target is not the plain id column
COMPOSITE_KEYS: dict[str, tuple[str, ...]] = {
    DEVICE_OWNERSHIP_TABLE: ("device_id", "tenant_id"),
}

_TARGET_TABLES: frozenset[str] = frozenset(TABLE_MAPPING.values())

IDENTIFIER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]{0,62}")


# ── Lookups ─────────────────────────────────────────────────────────────────


def map_source_to_target(source_table: str | None) -> str | None:
    """Return the base-schema table for a source table, or None if not syncable."""
    if not source_table:
        return None
    return TABLE_MAPPING.get(source_table)


def classify(table_name: str) -> TableClassification:
    """Return the isolation strategy for a target table.

    Unregistered tables default to a direct tenant_id filter.
    """
    if table_name in GLOBAL_TABLES:
        return TableClassification(FilterStrategy.GLOBAL)
    if table_name in DEVICE_BASED_TABLES:
        return TableClassification(
            FilterStrategy.DEVICE,
            join_column=DEVICE_BASED_TABLES[table_name],
        )
    if table_name in PARENT_RELATION_TABLES:
        parent_table, foreign_key = PARENT_RELATION_TABLES[table_name]
        return TableClassification(
            FilterStrategy.PARENT,
            parent_table=parent_table,
            foreign_key=foreign_key,
        )
    return TableClassification(FilterStrategy.DIRECT)


def is_global(table_name: str) -> bool:
    return table_name in GLOBAL_TABLES


def conflict_columns(table_name: str) -> tuple[str, ...]:
    """Columns that identify a row for upsert and delete."""
    return COMPOSITE_KEYS.get(table_name, ("id",))


def syncable_targets() -> list[str]:
    """All base-schema tables the pipeline can write, sorted."""
    return sorted(_TARGET_TABLES)


def tenant_scoped_targets() -> list[str]:
    """Target tables holding per-tenant rows (everything except global tables)."""
    return [t for t in syncable_targets() if t not in GLOBAL_TABLES]


# ── Identifier Validation ───────────────────────────────────────────────────


def validate_identifier(name: str) -> str:
    """Return name unchanged if it is a plain SQL identifier.

    Raises:
        InvalidIdentifierError: If name contains anything beyond letters,
            digits and underscores, or exceeds Postgres' 63-byte limit.
    """
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.fullmatch(name):
        raise InvalidIdentifierError(f"Invalid identifier: {name!r}")
    return name


def require_target_table(name: str) -> str:
    """Return name if it is a registered target table.

    Raises:
        InvalidIdentifierError: If name is not in the registry.
    """
    if name not in _TARGET_TABLES:
        raise InvalidIdentifierError(f"Table is not a registered sync target: {name!r}")
    return name


def quote_ident(name: str) -> str:
    """Double-quote a validated identifier for interpolation into DDL."""
    return f'"{validate_identifier(name)}"'
