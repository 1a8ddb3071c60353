"""Job processors and the inbound WhatsApp message router."""
