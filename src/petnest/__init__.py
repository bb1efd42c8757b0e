"""
petnest: PetNest marketplace SDK for Python.

Resilient session layer and realtime conversations for the PetNest
pet-adoption marketplace. Socket.IO + REST client.
"""

from petnest.client import AsyncPetNest
from petnest.auth import Auth
from petnest.chat import ConversationView, ViewState
from petnest.config import Settings
from petnest.conversations import ConversationsAPI
from petnest.credentials import CredentialStore, FileCredentialStore, MemoryCredentialStore
from petnest.errors import (
    PetNestError,
    AuthError,
    Unauthenticated,
    RefreshDenied,
    HttpError,
    ApiError,
    TransportDisconnected,
    InvalidConversation,
    HistoryLoadFailed,
    MetadataUnavailable,
)
from petnest.models.credentials import CredentialPair
from petnest.models.conversation import Conversation, Message, Participant
from petnest.models.events import C2SEvent, S2CEvent, ConnectionEvent
from petnest.tokens import TokenCoordinator
from petnest.transport.socketio import ConnectionState, RealtimeClient

__version__ = "0.1.0"
__all__ = [
    "AsyncPetNest",
    "Auth",
    "ConversationView",
    "ViewState",
    "Settings",
    "ConversationsAPI",
    "CredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
    "PetNestError",
    "AuthError",
    "Unauthenticated",
    "RefreshDenied",
    "HttpError",
    "ApiError",
    "TransportDisconnected",
    "InvalidConversation",
    "HistoryLoadFailed",
    "MetadataUnavailable",
    "CredentialPair",
    "Conversation",
    "Message",
    "Participant",
    "C2SEvent",
    "S2CEvent",
    "ConnectionEvent",
    "TokenCoordinator",
    "ConnectionState",
    "RealtimeClient",
]
