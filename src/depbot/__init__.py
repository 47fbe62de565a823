"""
depbot - Dependabot update jobs for Azure DevOps repositories
"""

__version__ = "0.1.0"

from .core import UpdateOrchestrator
from .errors import DepbotError

__all__ = ["UpdateOrchestrator", "DepbotError"]
