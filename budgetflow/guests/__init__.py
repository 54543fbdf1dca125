"""Guest capability token package."""

from budgetflow.guests.tokens import GuestTokenService

__all__ = ["GuestTokenService"]
