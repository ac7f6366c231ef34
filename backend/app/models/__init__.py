"""SQLAlchemy models for the podcast billing service.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from app.models.catalog import MerchOrder, Podcast, Purchase
from app.models.payment import Payment
from app.models.pricing_plan import PricingPlan
from app.models.refund_request import RefundRequest
from app.models.subscription import Subscription
from app.models.user import User
from app.models.webhook_event import WebhookEvent

__all__ = [
    "MerchOrder",
    "Payment",
    "Podcast",
    "PricingPlan",
    "Purchase",
    "RefundRequest",
    "Subscription",
    "User",
    "WebhookEvent",
]
