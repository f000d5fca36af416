from collector_messaging.client.backend import MessagingBackend, Subscription
from collector_messaging.client.directory import ConversationDirectory
from collector_messaging.client.http_backend import HttpMessagingBackend
from collector_messaging.client.results import BackendError, OperationResult
from collector_messaging.client.session import MessagingSession
from collector_messaging.client.synchronizer import MessageSynchronizer, SyncState

__all__ = [
    "BackendError",
    "ConversationDirectory",
    "HttpMessagingBackend",
    "MessageSynchronizer",
    "MessagingBackend",
    "MessagingSession",
    "OperationResult",
    "Subscription",
    "SyncState",
]
