"""External collaborators: chat completion and memory/retrieval."""
from callassist.services.chat import ChatService, CloudflareChatService
from callassist.services.memory import MemoryService, SupermemoryService, create_stable_custom_id

__all__ = [
    "ChatService",
    "CloudflareChatService",
    "MemoryService",
    "SupermemoryService",
    "create_stable_custom_id",
]
