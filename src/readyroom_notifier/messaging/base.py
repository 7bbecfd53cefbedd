"""
Messaging platform interface.

Processors talk to the platform only through :class:`MessagingClient`. Every
operation may raise a subclass of
:class:`~readyroom_notifier.core.errors.MessagingError`; callers catch those
per destination.
"""
from abc import ABC, abstractmethod
from typing import Optional

from readyroom_notifier.core.models import Destination


class MessagingClient(ABC):
    """Operations the notifier needs from a messaging platform."""

    @abstractmethod
    async def send_message(self, destination: Destination, content: str) -> str:
        """Post ``content`` to the destination channel and return the new message id."""

    @abstractmethod
    async def edit_message(self, destination: Destination, message_id: str, content: str) -> None:
        """Replace the content of a posted message. Raises NotFoundError if it is gone."""

    @abstractmethod
    async def create_thread(
        self,
        destination: Destination,
        message_id: str,
        name: str,
        auto_archive_minutes: int,
    ) -> str:
        """
        Open a thread anchored on ``message_id`` and return its id.

        Raises:
            ThreadAlreadyExistsError: The message already has a thread.
            PermissionDeniedError: Threads cannot be created here.
        """

    @abstractmethod
    async def get_existing_thread(
        self,
        destination: Destination,
        message_id: str,
        name: Optional[str] = None,
    ) -> Optional[str]:
        """Id of the thread already attached to ``message_id``, or None."""

    @abstractmethod
    async def post_to_thread(self, destination: Destination, thread_id: str, content: str) -> str:
        """Post into an existing thread and return the new message id."""

    @abstractmethod
    async def delete_message(self, destination: Destination, message_id: str) -> None:
        ...

    @abstractmethod
    async def delete_thread(self, destination: Destination, thread_id: str) -> None:
        ...

    @abstractmethod
    def format_mention(self, identity: str, display_name: Optional[str] = None) -> str:
        """Inline mention markup for one platform identity."""

    def format_role_mention(self, role: str) -> str:
        return f"@{role}"

    async def close(self) -> None:
        """Release platform connections. Default is a no-op."""
