"""
Telegram implementation of the messaging interface, built on telethon.

Mapping onto Telegram concepts:
- A destination's ``channel_id`` is the chat (numeric id or @username).
  ``server_id`` only participates in destination deduplication.
- A thread is a forum topic in that chat. Topics are not anchored on a
  message, so the anchor message id is only used for naming and logs, and
  ``auto_archive_minutes`` has no Telegram equivalent.

Telethon RPC errors are translated into the MessagingError hierarchy so the
processors never see platform-specific exceptions.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

from telethon import TelegramClient
from telethon import errors as tg_errors
from telethon.tl.functions.channels import (
    CreateForumTopicRequest,
    DeleteTopicHistoryRequest,
    GetForumTopicsRequest,
)
from telethon.tl.types import MessageActionTopicCreate, MessageService

from readyroom_notifier.core.config import TelegramConfig
from readyroom_notifier.core.errors import (
    InvalidRequestError,
    MessagingError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
)
from readyroom_notifier.core.models import Destination
from readyroom_notifier.messaging.base import MessagingClient

logger = logging.getLogger(__name__)


def _peer(channel_id: str) -> Union[int, str]:
    stripped = channel_id.lstrip("-")
    return int(channel_id) if stripped.isdigit() else channel_id


@asynccontextmanager
async def _translate_errors(operation: str) -> AsyncIterator[None]:
    """Re-raise telethon errors as MessagingError subclasses."""
    try:
        yield
    except tg_errors.FloodWaitError as e:
        raise RateLimitedError(f"{operation}: flood wait {e.seconds}s", retry_after=e.seconds) from e
    except tg_errors.FloodError as e:
        raise RateLimitedError(f"{operation}: {e}") from e
    except (
        tg_errors.ChatAdminRequiredError,
        tg_errors.ChatWriteForbiddenError,
        tg_errors.ForbiddenError,
    ) as e:
        raise PermissionDeniedError(f"{operation}: {e}") from e
    except (tg_errors.MessageIdInvalidError, tg_errors.ChannelInvalidError, tg_errors.NotFoundError) as e:
        raise NotFoundError(f"{operation}: {e}") from e
    except tg_errors.BadRequestError as e:
        raise InvalidRequestError(f"{operation}: {e}") from e
    except tg_errors.RPCError as e:
        raise MessagingError(f"{operation}: {e}") from e


class TelegramMessagingClient(MessagingClient):
    """
    Messaging client backed by a telethon ``TelegramClient``.

    Use :meth:`from_config` to build and start a client from configuration,
    or pass an already connected client for scripts and tests.
    """

    def __init__(self, client: TelegramClient):
        self.client = client

    @classmethod
    async def from_config(cls, config: TelegramConfig) -> "TelegramMessagingClient":
        client = TelegramClient(config.session, config.api_id, config.api_hash)
        if config.bot_token:
            await client.start(bot_token=config.bot_token)
        else:
            await client.start()
        me = await client.get_me()
        logger.info("Connected to Telegram as %s", getattr(me, "username", None) or me.id)
        return cls(client)

    async def close(self) -> None:
        await self.client.disconnect()

    async def send_message(self, destination: Destination, content: str) -> str:
        async with _translate_errors("send_message"):
            message = await self.client.send_message(
                _peer(destination.channel_id),
                content,
                parse_mode="md",
                link_preview=False,
            )
        return str(message.id)

    async def edit_message(self, destination: Destination, message_id: str, content: str) -> None:
        try:
            async with _translate_errors("edit_message"):
                result = await self.client.edit_message(
                    _peer(destination.channel_id),
                    int(message_id),
                    content,
                    parse_mode="md",
                    link_preview=False,
                )
        except InvalidRequestError as e:
            # Editing to identical content is reported as an error by Telegram
            if isinstance(e.__cause__, tg_errors.MessageNotModifiedError):
                return
            raise
        if result is None:
            raise NotFoundError(f"edit_message: message {message_id} not found")

    async def create_thread(
        self,
        destination: Destination,
        message_id: str,
        name: str,
        auto_archive_minutes: int,
    ) -> str:
        async with _translate_errors("create_thread"):
            entity = await self.client.get_input_entity(_peer(destination.channel_id))
            updates = await self.client(CreateForumTopicRequest(channel=entity, title=name[:128]))

        for update in getattr(updates, "updates", []):
            message = getattr(update, "message", None)
            if isinstance(message, MessageService) and isinstance(message.action, MessageActionTopicCreate):
                logger.debug(
                    "Created topic %s in %s for message %s",
                    message.id,
                    destination.channel_id,
                    message_id,
                )
                return str(message.id)
        raise MessagingError("create_thread: topic id missing from Telegram response")

    async def get_existing_thread(
        self,
        destination: Destination,
        message_id: str,
        name: Optional[str] = None,
    ) -> Optional[str]:
        if not name:
            return None
        async with _translate_errors("get_existing_thread"):
            entity = await self.client.get_input_entity(_peer(destination.channel_id))
            result = await self.client(
                GetForumTopicsRequest(
                    channel=entity,
                    offset_date=None,
                    offset_id=0,
                    offset_topic=0,
                    limit=20,
                    q=name[:128],
                )
            )
        for topic in getattr(result, "topics", []):
            if getattr(topic, "title", None) == name[:128]:
                return str(topic.id)
        return None

    async def post_to_thread(self, destination: Destination, thread_id: str, content: str) -> str:
        async with _translate_errors("post_to_thread"):
            message = await self.client.send_message(
                _peer(destination.channel_id),
                content,
                reply_to=int(thread_id),
                parse_mode="md",
                link_preview=False,
            )
        return str(message.id)

    async def delete_message(self, destination: Destination, message_id: str) -> None:
        async with _translate_errors("delete_message"):
            await self.client.delete_messages(_peer(destination.channel_id), [int(message_id)])

    async def delete_thread(self, destination: Destination, thread_id: str) -> None:
        async with _translate_errors("delete_thread"):
            entity = await self.client.get_input_entity(_peer(destination.channel_id))
            await self.client(DeleteTopicHistoryRequest(channel=entity, top_msg_id=int(thread_id)))

    def format_mention(self, identity: str, display_name: Optional[str] = None) -> str:
        label = display_name or identity
        if identity.isdigit():
            return f"[{label}](tg://user?id={identity})"
        return f"@{identity.lstrip('@')}"
