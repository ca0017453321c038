"""Callback handlers for the processor's /authorize and /confirm endpoints"""

from pnm_callbacks.handlers.authorize_handler import AuthorizeHandler
from pnm_callbacks.handlers.confirm_handler import ConfirmHandler

__all__ = [
    "AuthorizeHandler",
    "ConfirmHandler",
]
