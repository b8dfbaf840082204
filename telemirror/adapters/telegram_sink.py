"""Telegram delivery sink.

Posts and edits messages in one chat (optionally one forum topic) and uploads
long content as markdown documents. Telegram errors are translated into the
delivery error taxonomy so the sync engine never sees library exceptions.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Union

from telegram.error import BadRequest, RetryAfter, TelegramError

from telemirror.core.errors import DeliveryError, DeliveryNotFoundError, RateLimitedError, get_retry_after
from telemirror.utils import delivery_retry
from telemirror.utils.markdown import escape_markdown_v2

if TYPE_CHECKING:
    from telegram import Bot, Message

logger = logging.getLogger(__name__)

ChatId = Union[int, str]

UPLOAD_FILENAME = "full_message.md"
CAPTION_PREVIEW_LENGTH = 200
MAX_CAPTION_LENGTH = 1024


def _delivery_error(error: Exception) -> DeliveryError:
    """Translate a Telegram error that survived the retry policy."""
    if isinstance(error, RetryAfter):
        return RateLimitedError(get_retry_after(error) or 0.0, str(error))
    return DeliveryError(f"Telegram request failed: {error}")


class TelegramSink:
    """`DeliverySink` backed by a python-telegram-bot `Bot`."""

    def __init__(
        self,
        bot: "Bot",
        chat_id: ChatId,
        message_thread_id: Optional[int] = None,
        parse_mode: Optional[str] = None,
        *,
        max_retries: int = 3,
        max_timeout: float = 15.0,
    ) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.message_thread_id = message_thread_id
        self.parse_mode = parse_mode
        retry = delivery_retry(max_retries=max_retries, max_timeout=max_timeout)
        self._send_message_with_retry = retry(self._send_message)
        # Edits wait out longer rate limits
        self._edit_message_with_retry = delivery_retry(max_retries=max_retries, max_timeout=max_timeout * 4)(
            self._edit_message
        )

    def _render(self, text: str) -> str:
        if self.parse_mode == "MarkdownV2":
            return escape_markdown_v2(text)
        return text

    async def post(self, text: str) -> str:
        """Send a new message and return its message id."""
        try:
            message = await self._send_message_with_retry(self._render(text))
        except (TelegramError, ConnectionError, TimeoutError) as e:
            logger.error("Failed to post message to chat %s: %s", self.chat_id, e)
            raise _delivery_error(e) from e
        logger.debug("Posted message %s (%d chars)", message.message_id, len(text))
        return str(message.message_id)

    async def update(self, ref: str, text: str) -> str:
        """Edit a previously posted message.

        Raises:
            DeliveryNotFoundError: If the message was deleted
            DeliveryError: For any other failure
        """
        try:
            await self._edit_message_with_retry(int(ref), self._render(text))
        except BadRequest as e:
            error_text = str(e).lower()
            # Unchanged content: the message exists, treat as delivered
            if "message is not modified" in error_text:
                logger.debug("Message %s not modified (content unchanged)", ref)
                return ref
            if "message to edit not found" in error_text or "message not found" in error_text:
                raise DeliveryNotFoundError(ref) from e
            logger.error("Failed to edit message %s: %s", ref, e)
            raise _delivery_error(e) from e
        except (TelegramError, ConnectionError, TimeoutError) as e:
            logger.error("Failed to edit message %s after retries: %s", ref, e)
            raise _delivery_error(e) from e
        return ref

    async def _send_message(self, text: str) -> "Message":
        return await self.bot.send_message(
            chat_id=self.chat_id,
            message_thread_id=self.message_thread_id,
            text=text,
            parse_mode=self.parse_mode,
        )

    async def _edit_message(self, message_id: int, text: str) -> None:
        await self.bot.edit_message_text(
            chat_id=self.chat_id,
            message_id=message_id,
            text=text,
            parse_mode=self.parse_mode,
        )


class TelegramUploader:
    """`LongContentUploader` sending full content as a document."""

    def __init__(
        self,
        bot: "Bot",
        chat_id: ChatId,
        message_thread_id: Optional[int] = None,
        *,
        max_retries: int = 3,
        max_timeout: float = 15.0,
    ) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.message_thread_id = message_thread_id
        self._send_document_with_retry = delivery_retry(max_retries=max_retries, max_timeout=max_timeout)(
            self._send_document
        )

    async def upload_full(self, content: str, preview_prefix: str) -> str:
        """Upload `content` as a markdown file with a short preview caption."""
        preview = content[:CAPTION_PREVIEW_LENGTH]
        if len(content) > CAPTION_PREVIEW_LENGTH:
            preview += "..."
        caption = (preview_prefix + preview)[:MAX_CAPTION_LENGTH]
        try:
            message = await self._send_document_with_retry(content.encode("utf-8"), caption)
        except (TelegramError, ConnectionError, TimeoutError) as e:
            logger.error("Failed to upload %d chars to chat %s: %s", len(content), self.chat_id, e)
            raise _delivery_error(e) from e
        logger.debug("Uploaded %d chars as message %s", len(content), message.message_id)
        return str(message.message_id)

    async def _send_document(self, data: bytes, caption: str) -> "Message":
        return await self.bot.send_document(
            chat_id=self.chat_id,
            message_thread_id=self.message_thread_id,
            document=data,
            filename=UPLOAD_FILENAME,
            caption=caption,
            write_timeout=15.0,
            read_timeout=15.0,
        )
