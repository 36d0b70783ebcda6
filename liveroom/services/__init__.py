from .document_store import DocumentStore, MemoryDocumentStore
from .firestore_service import FirestoreDocumentStore, create_document_store
from .hub import CollaborationHub
from .persistence import PersistenceScheduler
from .registry import RoomRegistry
from .room_session import RoomSession

__all__ = [
    "DocumentStore", "MemoryDocumentStore", "FirestoreDocumentStore", "create_document_store",
    "CollaborationHub", "PersistenceScheduler", "RoomRegistry", "RoomSession",
]
