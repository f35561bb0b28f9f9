from .api_client import ChatApiClient
from .attempts import AttemptNavigator, AttemptStore
from .interceptor import MessageAppended, MessageContentChanged, MessageFeed, MessageInterceptor, MessageRemoved
from .regeneration import RegenerationCoordinator
from .session import ChatClientSession
from .stream_tracker import ClientStreamTracker, SessionStorage, TrackerConfig

__all__ = [
    "ChatApiClient",
    "AttemptNavigator",
    "AttemptStore",
    "MessageAppended",
    "MessageContentChanged",
    "MessageFeed",
    "MessageInterceptor",
    "MessageRemoved",
    "RegenerationCoordinator",
    "ChatClientSession",
    "ClientStreamTracker",
    "SessionStorage",
    "TrackerConfig",
]
