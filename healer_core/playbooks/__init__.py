from .base import FixContext, FixOutcome, FixPlaybook
from .registry import PlaybookRegistry

__all__ = ["FixContext", "FixOutcome", "FixPlaybook", "PlaybookRegistry"]
