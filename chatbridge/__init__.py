"""Messaging bridge for Facebook Messenger and WhatsApp Business"""

__version__ = "1.0.0"
