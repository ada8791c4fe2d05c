"""Send, stop and retry chat turns against the relay.

``ChatController`` ties the conversation store to the stream reconciler. A
send uploads pending files one at a time, appends the user message and a
``streaming`` assistant message, then streams the reply into that assistant
message. Exactly one cancellation token is live at a time; starting a new
send cancels the previous one.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Sequence

import httpx

from chatrelay.client.store import ConversationStore, ReplaceFields, append_content
from chatrelay.client.stream import CancellationToken, StreamOutcome, stream_chat
from chatrelay.client.uploads import PendingFile, UploadError, upload_file
from chatrelay.models.conversation import (
    Attachment,
    ChatMessage,
    ConversationStats,
    MessageRole,
    MessageStatus,
)

logger = logging.getLogger(__name__)


class ChatController:
    def __init__(
        self,
        client: httpx.AsyncClient,
        store: ConversationStore,
        provider: str,
        model: str,
        chat_path: str = "/api/chat",
        upload_path: str = "/api/upload",
    ) -> None:
        self.client = client
        self.store = store
        self.provider = provider
        self.model = model
        self.chat_path = chat_path
        self.upload_path = upload_path

        self.last_payload: Optional[dict[str, Any]] = None
        self.last_error: Optional[str] = None
        self._last_conversation_id: Optional[str] = None
        self._token: Optional[CancellationToken] = None

    @property
    def is_sending(self) -> bool:
        return self._token is not None

    def dismiss_error(self) -> None:
        self.last_error = None

    def stop(self) -> None:
        """Abort the in-flight send, if any. Safe to call at any time."""
        if self._token is not None:
            self._token.cancel()

    async def send(
        self,
        text: str,
        files: Sequence[PendingFile] = (),
        system_prompt: Optional[str] = None,
    ) -> Optional[ChatMessage]:
        """Send a user turn in the current conversation.

        Returns the assistant message in its final state, or ``None`` when
        nothing was sent (empty input, or uploads that failed or were stopped).
        """
        text = text.strip()
        if not text and not files:
            return None

        token = self._begin()
        try:
            return await self._send(token, text, files, system_prompt)
        finally:
            self._release(token)

    async def _send(
        self,
        token: CancellationToken,
        text: str,
        files: Sequence[PendingFile],
        system_prompt: Optional[str],
    ) -> Optional[ChatMessage]:
        conv = self.store.current_conversation or self.store.add_conversation()
        self.last_error = None

        attachments = await self._upload_all(files, token)
        if attachments is None or token.cancelled:
            return None

        if system_prompt is not None:
            self.store.update_system_prompt(conv.id, system_prompt)
            conv = self.store.get_conversation(conv.id) or conv

        history = [
            {"role": m.role.value, "content": m.content}
            for m in self.store.messages_for(conv.id)
        ]
        self.store.add_message(
            ChatMessage(
                conversation_id=conv.id,
                role=MessageRole.USER,
                content=text,
                status=MessageStatus.DONE,
                attachments=attachments,
            )
        )

        payload: dict[str, Any] = {
            "messages": history + [{"role": "user", "content": text}],
            "model": self.model,
            "provider": self.provider,
            "options": {"stream": True},
        }
        if conv.system_prompt:
            payload["systemPrompt"] = conv.system_prompt
        if attachments:
            payload["attachments"] = [
                a.model_dump(mode="json", exclude_none=True) for a in attachments
            ]
        return await self._dispatch(conv.id, payload, token)

    async def retry(self) -> Optional[ChatMessage]:
        """Re-send the last payload into a new assistant message."""
        if self.last_payload is None or self._last_conversation_id is None:
            return None
        if self.store.get_conversation(self._last_conversation_id) is None:
            return None
        self.last_error = None
        token = self._begin()
        try:
            return await self._dispatch(self._last_conversation_id, self.last_payload, token)
        finally:
            self._release(token)

    def _begin(self) -> CancellationToken:
        """Cancel any in-flight send and register a token for the next one."""
        if self._token is not None:
            logger.info("Cancelling in-flight send before starting a new one")
            self._token.cancel()
        token = CancellationToken()
        self._token = token
        return token

    def _release(self, token: CancellationToken) -> None:
        if self._token is token:
            self._token = None

    async def _upload_all(
        self, files: Sequence[PendingFile], token: CancellationToken
    ) -> Optional[list[Attachment]]:
        uploaded: list[Attachment] = []
        for pending in files:
            if token.cancelled:
                logger.info("Send stopped during uploads")
                return None
            try:
                uploaded.append(await upload_file(self.client, pending, self.upload_path))
            except UploadError as exc:
                self.last_error = exc.message
                return None
            except httpx.HTTPError as exc:
                self.last_error = str(exc) or "Upload failed"
                return None
        return uploaded

    async def _dispatch(
        self, conversation_id: str, payload: dict[str, Any], token: CancellationToken
    ) -> Optional[ChatMessage]:
        self.last_payload = payload
        self._last_conversation_id = conversation_id

        assistant = ChatMessage(
            conversation_id=conversation_id,
            role=MessageRole.ASSISTANT,
            status=MessageStatus.STREAMING,
        )
        self.store.add_message(assistant)

        def on_delta(delta: str) -> None:
            self.store.update_message(conversation_id, assistant.id, append_content(delta))

        def on_error(message: str) -> None:
            self.last_error = message
            self.store.update_message(
                conversation_id, assistant.id, ReplaceFields({"status": MessageStatus.ERROR})
            )

        try:
            result = await stream_chat(
                self.client, payload, on_delta, on_error, token, path=self.chat_path
            )
        except asyncio.CancelledError:
            self._finish(conversation_id, assistant.id)
            raise

        if result.outcome is not StreamOutcome.FAILED:
            self._finish(conversation_id, assistant.id)
        if result.status is not None:
            self.store.update_stats(
                conversation_id,
                ConversationStats(
                    last_latency_ms=result.latency_ms,
                    last_status=result.status,
                    last_provider=payload.get("provider"),
                ),
            )
        return self.store.get_message(conversation_id, assistant.id)

    def _finish(self, conversation_id: str, message_id: str) -> None:
        self.store.update_message(
            conversation_id, message_id, ReplaceFields({"status": MessageStatus.DONE})
        )
