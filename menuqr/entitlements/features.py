"""
Feature catalog - closed set of features, ordered tiers, and tier defaults.

Provides:
- Feature: every capability identifier a gate may reference
- Tier: ordered subscription levels (free < starter < ... < enterprise)
- FEATURE_TIERS: the single Feature -> minimum Tier map
- ResourceKind: metered resources with numeric limits
- DEFAULT_PLAN_LIMITS / DEFAULT_PLAN_PRICING: seed values for new plans

CRITICAL: Tiers only SEED new plans. Whether a tenant has a feature is always
answered from its live Plan.enabled_features, never from this module.
"""

from enum import Enum
from typing import Dict, List, Optional, Union

from menuqr.entitlements.errors import UnknownFeatureError


class Feature(str, Enum):
    """Every feature identifier known to the application."""

    # free
    MENU_MANAGEMENT = "menu_management"
    ORDERS = "orders"
    QR_CODES = "qr_codes"
    BASIC_DASHBOARD = "basic_dashboard"
    BASIC_SETTINGS = "basic_settings"

    # starter
    CUSTOMER_ACCOUNTS = "customer_accounts"
    BASIC_ANALYTICS = "basic_analytics"
    DISH_VARIANTS = "dish_variants"
    DISH_OPTIONS = "dish_options"
    MULTI_LANGUAGE = "multi_language"
    EMAIL_NOTIFICATIONS = "email_notifications"
    ORDER_HISTORY = "order_history"

    # professional
    RESERVATIONS = "reservations"
    REVIEWS = "reviews"
    INVENTORY = "inventory"
    SCHEDULED_ORDERS = "scheduled_orders"
    KDS = "kds"
    SMS_NOTIFICATIONS = "sms_notifications"
    ALLERGEN_INFO = "allergen_info"
    NUTRITION_INFO = "nutrition_info"
    ADVANCED_DASHBOARD = "advanced_dashboard"
    BASIC_EXPORT = "basic_export"

    # business
    LOYALTY_PROGRAM = "loyalty_program"
    SMS_CAMPAIGNS = "sms_campaigns"
    ADVANCED_ANALYTICS = "advanced_analytics"
    DATA_EXPORT = "data_export"
    MULTI_LOCATION = "multi_location"
    API_READ = "api_read"
    WHITE_LABEL = "white_label"
    WEBHOOKS = "webhooks"
    PRIORITY_SUPPORT = "priority_support"
    CUSTOM_BRANDING = "custom_branding"

    # enterprise
    DELIVERY_MODULE = "delivery_module"
    DRIVER_MANAGEMENT = "driver_management"
    GPS_TRACKING = "gps_tracking"
    ROUTE_OPTIMIZATION = "route_optimization"
    PROOF_OF_DELIVERY = "proof_of_delivery"
    HOTEL_MODULE = "hotel_module"
    TWO_FACTOR_AUTH = "two_factor_auth"
    AUDIT_LOGS = "audit_logs"
    API_WRITE = "api_write"
    CUSTOM_INTEGRATIONS = "custom_integrations"
    DEDICATED_SUPPORT = "dedicated_support"
    SLA_GUARANTEE = "sla_guarantee"


class Tier(str, Enum):
    """Subscription tiers. Declaration order is the tier order."""
    FREE = "free"
    STARTER = "starter"
    PROFESSIONAL = "professional"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class ResourceKind(str, Enum):
    """Metered resources. Limits use -1 for unlimited."""
    DISHES = "dishes"
    ORDERS = "orders"
    USERS = "users"
    SMS_CREDITS = "sms_credits"
    STORAGE = "storage"
    TABLES = "tables"
    CAMPAIGNS = "campaigns"
    LOCATIONS = "locations"


UNLIMITED = -1

TIER_HIERARCHY: List[Tier] = list(Tier)

# Counters that roll over with the billing period; the rest track live inventory.
MONTHLY_RESOURCES = frozenset({
    ResourceKind.ORDERS,
    ResourceKind.SMS_CREDITS,
    ResourceKind.CAMPAIGNS,
})

FEATURE_TIERS: Dict[Feature, Tier] = {
    Feature.MENU_MANAGEMENT: Tier.FREE,
    Feature.ORDERS: Tier.FREE,
    Feature.QR_CODES: Tier.FREE,
    Feature.BASIC_DASHBOARD: Tier.FREE,
    Feature.BASIC_SETTINGS: Tier.FREE,

    Feature.CUSTOMER_ACCOUNTS: Tier.STARTER,
    Feature.BASIC_ANALYTICS: Tier.STARTER,
    Feature.DISH_VARIANTS: Tier.STARTER,
    Feature.DISH_OPTIONS: Tier.STARTER,
    Feature.MULTI_LANGUAGE: Tier.STARTER,
    Feature.EMAIL_NOTIFICATIONS: Tier.STARTER,
    Feature.ORDER_HISTORY: Tier.STARTER,

    Feature.RESERVATIONS: Tier.PROFESSIONAL,
    Feature.REVIEWS: Tier.PROFESSIONAL,
    Feature.INVENTORY: Tier.PROFESSIONAL,
    Feature.SCHEDULED_ORDERS: Tier.PROFESSIONAL,
    Feature.KDS: Tier.PROFESSIONAL,
    Feature.SMS_NOTIFICATIONS: Tier.PROFESSIONAL,
    Feature.ALLERGEN_INFO: Tier.PROFESSIONAL,
    Feature.NUTRITION_INFO: Tier.PROFESSIONAL,
    Feature.ADVANCED_DASHBOARD: Tier.PROFESSIONAL,
    Feature.BASIC_EXPORT: Tier.PROFESSIONAL,

    Feature.LOYALTY_PROGRAM: Tier.BUSINESS,
    Feature.SMS_CAMPAIGNS: Tier.BUSINESS,
    Feature.ADVANCED_ANALYTICS: Tier.BUSINESS,
    Feature.DATA_EXPORT: Tier.BUSINESS,
    Feature.MULTI_LOCATION: Tier.BUSINESS,
    Feature.API_READ: Tier.BUSINESS,
    Feature.WHITE_LABEL: Tier.BUSINESS,
    Feature.WEBHOOKS: Tier.BUSINESS,
    Feature.PRIORITY_SUPPORT: Tier.BUSINESS,
    Feature.CUSTOM_BRANDING: Tier.BUSINESS,

    Feature.DELIVERY_MODULE: Tier.ENTERPRISE,
    Feature.DRIVER_MANAGEMENT: Tier.ENTERPRISE,
    Feature.GPS_TRACKING: Tier.ENTERPRISE,
    Feature.ROUTE_OPTIMIZATION: Tier.ENTERPRISE,
    Feature.PROOF_OF_DELIVERY: Tier.ENTERPRISE,
    Feature.HOTEL_MODULE: Tier.ENTERPRISE,
    Feature.TWO_FACTOR_AUTH: Tier.ENTERPRISE,
    Feature.AUDIT_LOGS: Tier.ENTERPRISE,
    Feature.API_WRITE: Tier.ENTERPRISE,
    Feature.CUSTOM_INTEGRATIONS: Tier.ENTERPRISE,
    Feature.DEDICATED_SUPPORT: Tier.ENTERPRISE,
    Feature.SLA_GUARANTEE: Tier.ENTERPRISE,
}

FEATURE_DISPLAY_NAMES: Dict[Feature, str] = {
    Feature.MENU_MANAGEMENT: "Menu Management",
    Feature.ORDERS: "Order Processing",
    Feature.QR_CODES: "QR Code Generation",
    Feature.BASIC_DASHBOARD: "Basic Dashboard",
    Feature.BASIC_SETTINGS: "Basic Settings",
    Feature.CUSTOMER_ACCOUNTS: "Customer Accounts",
    Feature.BASIC_ANALYTICS: "Basic Analytics",
    Feature.DISH_VARIANTS: "Dish Variants",
    Feature.DISH_OPTIONS: "Dish Options",
    Feature.MULTI_LANGUAGE: "Multi-language Menu",
    Feature.EMAIL_NOTIFICATIONS: "Email Notifications",
    Feature.ORDER_HISTORY: "Order History",
    Feature.RESERVATIONS: "Reservations System",
    Feature.REVIEWS: "Reviews & Ratings",
    Feature.INVENTORY: "Inventory Management",
    Feature.SCHEDULED_ORDERS: "Scheduled Orders",
    Feature.KDS: "Kitchen Display System",
    Feature.SMS_NOTIFICATIONS: "SMS Notifications",
    Feature.ALLERGEN_INFO: "Allergen Information",
    Feature.NUTRITION_INFO: "Nutrition Information",
    Feature.ADVANCED_DASHBOARD: "Advanced Dashboard",
    Feature.BASIC_EXPORT: "Basic Data Export",
    Feature.LOYALTY_PROGRAM: "Loyalty Program",
    Feature.SMS_CAMPAIGNS: "SMS Marketing Campaigns",
    Feature.ADVANCED_ANALYTICS: "Advanced Analytics",
    Feature.DATA_EXPORT: "Full Data Export",
    Feature.MULTI_LOCATION: "Multi-location Support",
    Feature.API_READ: "API Access (Read)",
    Feature.WHITE_LABEL: "White Label",
    Feature.WEBHOOKS: "Webhooks",
    Feature.PRIORITY_SUPPORT: "Priority Support",
    Feature.CUSTOM_BRANDING: "Custom Branding",
    Feature.DELIVERY_MODULE: "Delivery Management",
    Feature.DRIVER_MANAGEMENT: "Driver Fleet Management",
    Feature.GPS_TRACKING: "Real-time GPS Tracking",
    Feature.ROUTE_OPTIMIZATION: "Route Optimization",
    Feature.PROOF_OF_DELIVERY: "Proof of Delivery",
    Feature.HOTEL_MODULE: "Hotel Room Service",
    Feature.TWO_FACTOR_AUTH: "Two-Factor Authentication",
    Feature.AUDIT_LOGS: "Audit Logs",
    Feature.API_WRITE: "API Access (Full)",
    Feature.CUSTOM_INTEGRATIONS: "Custom Integrations",
    Feature.DEDICATED_SUPPORT: "Dedicated Support",
    Feature.SLA_GUARANTEE: "SLA Guarantee",
}

RESOURCE_DISPLAY_NAMES: Dict[ResourceKind, str] = {
    ResourceKind.DISHES: "Dishes",
    ResourceKind.ORDERS: "Monthly orders",
    ResourceKind.USERS: "Staff users",
    ResourceKind.SMS_CREDITS: "SMS credits",
    ResourceKind.STORAGE: "Storage (MB)",
    ResourceKind.TABLES: "Tables",
    ResourceKind.CAMPAIGNS: "Monthly campaigns",
    ResourceKind.LOCATIONS: "Locations",
}

# Storage is in MB
DEFAULT_PLAN_LIMITS: Dict[Tier, Dict[ResourceKind, int]] = {
    Tier.FREE: {
        ResourceKind.DISHES: 15,
        ResourceKind.ORDERS: 50,
        ResourceKind.USERS: 1,
        ResourceKind.SMS_CREDITS: 0,
        ResourceKind.STORAGE: 50,
        ResourceKind.TABLES: 5,
        ResourceKind.CAMPAIGNS: 0,
        ResourceKind.LOCATIONS: 1,
    },
    Tier.STARTER: {
        ResourceKind.DISHES: 50,
        ResourceKind.ORDERS: 500,
        ResourceKind.USERS: 3,
        ResourceKind.SMS_CREDITS: 50,
        ResourceKind.STORAGE: 500,
        ResourceKind.TABLES: 15,
        ResourceKind.CAMPAIGNS: 2,
        ResourceKind.LOCATIONS: 1,
    },
    Tier.PROFESSIONAL: {
        ResourceKind.DISHES: 150,
        ResourceKind.ORDERS: 2000,
        ResourceKind.USERS: 10,
        ResourceKind.SMS_CREDITS: 200,
        ResourceKind.STORAGE: 2048,
        ResourceKind.TABLES: 50,
        ResourceKind.CAMPAIGNS: 10,
        ResourceKind.LOCATIONS: 1,
    },
    Tier.BUSINESS: {
        ResourceKind.DISHES: 500,
        ResourceKind.ORDERS: 10000,
        ResourceKind.USERS: 25,
        ResourceKind.SMS_CREDITS: 1000,
        ResourceKind.STORAGE: 10240,
        ResourceKind.TABLES: UNLIMITED,
        ResourceKind.CAMPAIGNS: UNLIMITED,
        ResourceKind.LOCATIONS: 3,
    },
    Tier.ENTERPRISE: {
        ResourceKind.DISHES: UNLIMITED,
        ResourceKind.ORDERS: UNLIMITED,
        ResourceKind.USERS: UNLIMITED,
        ResourceKind.SMS_CREDITS: 10000,
        ResourceKind.STORAGE: 102400,
        ResourceKind.TABLES: UNLIMITED,
        ResourceKind.CAMPAIGNS: UNLIMITED,
        ResourceKind.LOCATIONS: UNLIMITED,
    },
}

# Prices in cents. Enterprise is priced per contract.
DEFAULT_PLAN_PRICING: Dict[Tier, Dict[str, object]] = {
    Tier.FREE: {"monthly": 0, "yearly": 0, "currency": "EUR"},
    Tier.STARTER: {"monthly": 2900, "yearly": 29000, "currency": "EUR"},
    Tier.PROFESSIONAL: {"monthly": 7900, "yearly": 79000, "currency": "EUR"},
    Tier.BUSINESS: {"monthly": 14900, "yearly": 149000, "currency": "EUR"},
    Tier.ENTERPRISE: {"monthly": 0, "yearly": 0, "currency": "EUR"},
}


TierLike = Union[Tier, str, None]


def parse_feature(value: Union[Feature, str]) -> Feature:
    """
    Coerce a string into a catalog Feature.

    Raises:
        UnknownFeatureError: If the identifier is not in the catalog
    """
    if isinstance(value, Feature):
        return value
    try:
        return Feature(value)
    except ValueError:
        raise UnknownFeatureError(str(value))


def parse_tier(value: TierLike) -> Optional[Tier]:
    """Coerce a string into a Tier, or None when it is not a known tier."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(value)
    except ValueError:
        return None


def tier_index(tier: TierLike) -> int:
    """Position of the tier in TIER_HIERARCHY, -1 if unknown."""
    parsed = parse_tier(tier)
    if parsed is None:
        return -1
    return TIER_HIERARCHY.index(parsed)


def is_at_least(tier: TierLike, required: TierLike) -> bool:
    """True when `tier` sits at or above `required` in the hierarchy."""
    return tier_index(tier) >= tier_index(required)


def minimum_tier_for(feature: Union[Feature, str]) -> Tier:
    """
    Lowest tier whose seed plan includes the feature.

    Raises:
        UnknownFeatureError: If the feature is not in the catalog. Callers
            must treat this as a deny, never as a grant.
    """
    parsed = parse_feature(feature)
    tier = FEATURE_TIERS.get(parsed)
    if tier is None:
        raise UnknownFeatureError(parsed.value)
    return tier


def features_introduced_at(tier: TierLike) -> List[Feature]:
    """Features whose minimum tier is exactly `tier`."""
    parsed = parse_tier(tier)
    if parsed is None:
        return []
    return [feature for feature, minimum in FEATURE_TIERS.items() if minimum == parsed]


def all_features_for_tier(tier: TierLike) -> List[Feature]:
    """
    Union of features introduced at every tier up to and including `tier`.

    Unknown tiers fall back to the free tier. Used only to seed plans.
    """
    index = tier_index(tier)
    if index < 0:
        index = 0
    return [
        feature for feature, minimum in FEATURE_TIERS.items()
        if TIER_HIERARCHY.index(minimum) <= index
    ]


def feature_difference(from_tier: TierLike, to_tier: TierLike) -> Dict[str, List[Feature]]:
    """Features gained and lost when moving between tier defaults."""
    current = set(all_features_for_tier(from_tier))
    target = set(all_features_for_tier(to_tier))
    return {
        "gained": [f for f in Feature if f in target and f not in current],
        "lost": [f for f in Feature if f in current and f not in target],
    }


def next_tier(tier: TierLike) -> Optional[Tier]:
    """The tier immediately above `tier`, or None at the top."""
    index = tier_index(tier)
    if index < 0 or index >= len(TIER_HIERARCHY) - 1:
        return None
    return TIER_HIERARCHY[index + 1]


def feature_display_name(feature: Union[Feature, str]) -> str:
    try:
        return FEATURE_DISPLAY_NAMES[parse_feature(feature)]
    except UnknownFeatureError:
        return str(feature)


def tier_display_name(tier: TierLike) -> str:
    parsed = parse_tier(tier)
    if parsed is None:
        return str(tier)
    return parsed.value.capitalize()


def default_limits_for_tier(tier: TierLike) -> Dict[str, int]:
    """Seed limits keyed by resource value. Unknown tiers get free limits."""
    parsed = parse_tier(tier) or Tier.FREE
    return {resource.value: value for resource, value in DEFAULT_PLAN_LIMITS[parsed].items()}
