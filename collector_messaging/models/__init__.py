from collector_messaging.models.conversation import Conversation
from collector_messaging.models.listing import MarketplaceListing
from collector_messaging.models.message import Message
from collector_messaging.models.profile import Profile
from collector_messaging.models.realtime_outbox_event import RealtimeOutboxEvent

__all__ = [
    "Conversation",
    "MarketplaceListing",
    "Message",
    "Profile",
    "RealtimeOutboxEvent",
]
