"""Messaging channel clients used by the worker."""
from channels.whatsapp_bot import WhatsAppBot

__all__ = ["WhatsAppBot"]
