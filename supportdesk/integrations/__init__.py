"""Clients for the ticketing and email services used during handoff."""

from .freshdesk import FreshdeskClient, TicketingError
from .mailer import EmailDeliveryError, ResendMailer

__all__ = [
    "EmailDeliveryError",
    "FreshdeskClient",
    "ResendMailer",
    "TicketingError",
]
