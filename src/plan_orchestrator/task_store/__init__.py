from .bd_client import BdTaskStore
from .interfaces import StatusFilter, TaskStore, TaskStoreFactory

__all__ = ["BdTaskStore", "StatusFilter", "TaskStore", "TaskStoreFactory"]
