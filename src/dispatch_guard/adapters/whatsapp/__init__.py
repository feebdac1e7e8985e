"""Adapter WhatsApp Cloud API."""

from dispatch_guard.adapters.whatsapp.channel import WhatsAppCloudChannel

__all__ = ["WhatsAppCloudChannel"]
