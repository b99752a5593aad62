from .account import (
    Account,
    SUBSCRIPTION_STATUSES,
    STATUS_NONE,
    STATUS_TRIALING,
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    STATUS_CANCELED,
)
from .prepaid import PrepaidRecord
from .conversation import Conversation, Message, ROLE_USER, ROLE_ASSISTANT
from .billing_event import BillingEventLog
