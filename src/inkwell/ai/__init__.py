"""AI client and agent orchestration."""

from .client import AIClient, ClientSettings
from .errors import ErrorKind, OrchestrationError

__all__ = ["AIClient", "ClientSettings", "ErrorKind", "OrchestrationError"]
