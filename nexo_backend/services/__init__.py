"""Services for the Nexo issue extraction backend."""

from .prompt_manager import PromptManager
from .refresh_orchestrator import RefreshOrchestrator, RefreshResult

__all__ = [
    'PromptManager',
    'RefreshOrchestrator',
    'RefreshResult',
]
