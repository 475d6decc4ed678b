from .org import Organization
from .user import User
from .org_membership import OrgMembership, ROLE_OWNER, ROLE_ADMIN, ROLE_MEMBER
from .hotel import Hotel
from .product import Product
from .plan import SubscriptionPlan
from .subscription import OrganizationSubscription
from .billing_customer import BillingCustomer
from .billing_event import BillingEventLog
from .ledger import LedgerTransaction, LedgerBalance
from .product_activation import ProductActivation

__all__ = [
    "Organization",
    "User",
    "OrgMembership",
    "ROLE_OWNER",
    "ROLE_ADMIN",
    "ROLE_MEMBER",
    "Hotel",
    "Product",
    "SubscriptionPlan",
    "OrganizationSubscription",
    "BillingCustomer",
    "BillingEventLog",
    "LedgerTransaction",
    "LedgerBalance",
    "ProductActivation",
]
