"""Typed application errors with user-facing messages."""

from __future__ import annotations


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, user_message: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message


class SettingsError(AppError):
    pass


class StateStoreError(AppError):
    pass


class ProviderError(AppError):
    """Raised inside a pulse provider; converted to an error snapshot at its boundary."""
