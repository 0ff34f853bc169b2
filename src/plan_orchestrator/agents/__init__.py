from .credentials import CredentialProvider
from .headless import HeadlessAgentRunner, HeadlessAgentSpec, HeadlessResult, SubprocessHeadlessRunner

__all__ = [
    "CredentialProvider",
    "HeadlessAgentRunner",
    "HeadlessAgentSpec",
    "HeadlessResult",
    "SubprocessHeadlessRunner",
]
