from .bootstrap import ensure_state_root
from .container import Container

__all__ = ["Container", "ensure_state_root"]
