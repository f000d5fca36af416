from collector_messaging.realtime.connection_manager import ConnectionManager
from collector_messaging.realtime.dispatcher import RealtimeDispatcher
from collector_messaging.realtime.publisher import RealtimePublisher

__all__ = [
    "ConnectionManager",
    "RealtimeDispatcher",
    "RealtimePublisher",
]
