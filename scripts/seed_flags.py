"""Seed sample tenants, flags and overrides.

Flags are created through FlagAdminService so each one starts with a proper
``created`` history entry; re-running skips anything that already exists.
"""
import logging

from flagops.api.deps import build_services
from flagops.crud import crud_tenant
from flagops.db.session import SessionLocal
from flagops.logging_config import setup_logging
from flagops.schemas.feature_flag import FeatureFlagCreate
from flagops.schemas.tenant import TenantCreate

logger = logging.getLogger("flagops.seed")

SEED_ACTOR = "admin@flagops.local"

TENANTS = [
    TenantCreate(id="a0000001", name="Paws & Claws Pet Spa", tier="enterprise"),
    TenantCreate(id="a0000002", name="Happy Tails Grooming", tier="pro"),
    TenantCreate(id="a0000003", name="Pet Paradise", tier="pro"),
    TenantCreate(id="a0000005", name="Furry Friends Daycare", tier="free"),
    TenantCreate(id="a0000006", name="The Dog House", tier="free"),
]

FLAGS = [
    dict(
        flag_key="vaccination_reminders",
        display_name="Automated Vaccination Reminders",
        description="Email reminders to pet owners when vaccines are about to expire.",
        category="core", enabled=True, rollout_strategy="all_or_nothing", rollout_percentage=100,
    ),
    dict(
        flag_key="ai_scheduling_v2",
        display_name="AI-Powered Smart Scheduling",
        description="Suggests booking times from historical demand and staff availability.",
        category="beta", enabled=True, rollout_strategy="percentage", rollout_percentage=25,
        log_checks=True,
    ),
    dict(
        flag_key="advanced_reporting",
        display_name="Advanced Analytics & Custom Reports",
        description="Custom report builder, revenue forecasting and trend dashboards.",
        category="tier_gate", enabled=True, rollout_strategy="tier",
        allowed_tiers=["pro", "enterprise"],
    ),
    dict(
        flag_key="new_booking_flow",
        display_name="Redesigned Booking Creation Flow",
        description="Streamlined booking flow, tested with selected customers first.",
        category="experiment", enabled=True, rollout_strategy="specific",
        require_confirmation=True, log_checks=True, environments=["production"],
    ),
    dict(
        flag_key="legacy_api_v1",
        display_name="Legacy API v1 Endpoints",
        description="Backward compatibility for v1 endpoints. Kill to force migration to v2.",
        category="kill_switch", enabled=True, rollout_strategy="all_or_nothing", rollout_percentage=100,
        is_kill_switch=True, require_confirmation=True,
    ),
    dict(
        flag_key="batch_scheduling",
        display_name="Batch Scheduling Feature",
        description="Schedule several appointments at once.",
        category="core", enabled=True, rollout_strategy="tier", allowed_tiers=["pro", "enterprise"],
    ),
    dict(
        flag_key="debug_mode",
        display_name="Debug Mode",
        description="Verbose logging and debug information. Internal use only.",
        category="ops", enabled=False, rollout_strategy="specific",
        require_confirmation=True, log_checks=True, environments=["staging"],
    ),
    dict(
        flag_key="customer_portal_v2",
        display_name="Customer Portal Redesign",
        description="Customer-facing portal with a modern, mobile-friendly UI.",
        category="beta", enabled=True, rollout_strategy="percentage", rollout_percentage=50,
    ),
    dict(
        flag_key="sms_notifications",
        display_name="SMS Notifications",
        description="SMS reminders and notifications to pet owners.",
        category="tier_gate", enabled=True, rollout_strategy="tier", allowed_tiers=["enterprise"],
        environments=["production"],
    ),
    dict(
        flag_key="payment_processor_v2",
        display_name="New Payment Processor Integration",
        description="Lower fees and faster payouts. Rollout in progress.",
        category="core", enabled=False, rollout_strategy="percentage", rollout_percentage=10,
        is_kill_switch=True, require_confirmation=True, environments=["production"],
    ),
    dict(
        flag_key="dark_mode",
        display_name="Dark Mode Theme",
        description="Dark theme option for users.",
        category="experiment", enabled=True, rollout_strategy="all_or_nothing", rollout_percentage=100,
    ),
    dict(
        flag_key="inventory_management",
        display_name="Inventory Management Module",
        description="Inventory tracking for supplies, grooming products and retail items.",
        category="beta", enabled=False, rollout_strategy="specific", environments=["staging"],
    ),
]

OVERRIDES = [
    ("new_booking_flow", "a0000001", True, "Early adopter beta tester"),
    ("new_booking_flow", "a0000002", True, "Requested early access"),
    ("new_booking_flow", "a0000003", True, "High volume customer for testing"),
    ("debug_mode", "a0000001", True, "Internal testing account"),
    ("inventory_management", "a0000005", True, "Beta testing inventory module"),
    ("inventory_management", "a0000006", True, "Beta testing inventory module"),
]


def seed_tenants() -> None:
    db = SessionLocal()
    try:
        for tenant_in in TENANTS:
            if crud_tenant.get(db, tenant_in.id) is None:
                logger.info("Creating tenant %s (%s)", tenant_in.name, tenant_in.tier)
                crud_tenant.create(db, obj_in=tenant_in)
    finally:
        db.close()


def seed_flags() -> None:
    admin = build_services().admin
    for flag_data in FLAGS:
        existing = admin.backend.flags.get_by_key(flag_data["flag_key"])
        if existing is not None:
            logger.info("Flag %s already exists, skipping", flag_data["flag_key"])
            continue
        admin.create_flag(FeatureFlagCreate(**flag_data), SEED_ACTOR)

    for flag_key, tenant_id, enabled, reason in OVERRIDES:
        flag = admin.get_flag_by_key(flag_key)
        if admin.backend.overrides.get(flag.id, tenant_id) is None:
            admin.add_override(flag.id, tenant_id, enabled, reason, SEED_ACTOR)


def main() -> None:
    seed_tenants()
    seed_flags()
    logger.info("Seed complete")


if __name__ == "__main__":
    setup_logging()
    main()
