"""API module."""

from .telegram_webhook import router as telegram_router

__all__ = ['telegram_router']
