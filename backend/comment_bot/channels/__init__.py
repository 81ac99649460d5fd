"""Messaging channel integrations."""

from .telegram import TelegramBot

__all__ = ['TelegramBot']
