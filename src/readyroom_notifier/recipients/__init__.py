"""Reminder recipient resolution."""

from readyroom_notifier.recipients.resolver import RecipientResolver, latest_responses

__all__ = ["RecipientResolver", "latest_responses"]
