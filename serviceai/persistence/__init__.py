from serviceai.persistence.base import Persistence
from serviceai.persistence.memory import InMemoryPersistence
from serviceai.persistence.supabase import SupabasePersistence

__all__ = ["Persistence", "InMemoryPersistence", "SupabasePersistence"]
