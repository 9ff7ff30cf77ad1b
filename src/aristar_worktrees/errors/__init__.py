"""Error translation system for user-friendly messages."""

from .translator import ErrorTranslator, UserFriendlyError, explain

__all__ = ["ErrorTranslator", "UserFriendlyError", "explain"]
