from .db import db
from .audit_log import AuditLog
from .ip_rate_limit import IpRateLimit
from .availability import AvailabilityRule, AvailabilityOverride, AvailabilityOverrideSlot
from .subscription import SubscriptionPlan, Subscription, SubscriptionEvent
from .booking import Booking
from .invoice import Invoice
from .webhook_log import WebhookLog
