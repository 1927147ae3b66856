from .delivery import ChatThread, ConversationChanged, PollUpdateSource, PushUpdateSource
from .errors import (
    ChatError,
    IdentityUnavailable,
    InvalidArgument,
    RemoteStoreError,
    SubscriptionUnavailable,
    UploadError,
)
from .models import Conversation, LastMessage, Message, User
from .remote import RemoteConversationStore
from .service import ChatService
from .storage import LocalConversationCache
from .stores import ConversationStore, SyncedConversationStore

__version__ = "1.0.0"
