"""
Multi-turn chat on top of the generation gateway.

The session persists the user's turn before streaming and replays the
conversation as context. The caller saves the assistant reply once the
stream has finished, using save_assistant_response().
"""

from datetime import datetime
from typing import Dict, List, Optional

from ..core.token_counter import TokenUsage
from ..storage.models import ChatMessage
from ..storage.repository import ConversationRepository
from .gateway import GenerationGateway
from .streaming import CancellationToken, UsageStream

CHAT_FEATURE = "chat"
ROLES = ("user", "assistant", "system")


class ChatSession:
    """Conversation state for one actor."""

    def __init__(
        self,
        gateway: GenerationGateway,
        conversations: ConversationRepository,
        actor_id: str,
        group_id: str,
        conversation_id: Optional[str] = None
    ):
        self.gateway = gateway
        self.conversations = conversations
        self.actor_id = actor_id
        self.group_id = group_id
        self.conversation_id = conversation_id

    def _now(self) -> datetime:
        return self.gateway.clock.now()

    async def get_or_create_conversation(self, title: Optional[str] = None) -> str:
        """Return the current conversation id, creating one if needed."""
        if self.conversation_id:
            return self.conversation_id

        conversation = await self.conversations.create_conversation(
            self.actor_id,
            self.group_id,
            title or "New conversation",
            now=self._now()
        )
        self.conversation_id = conversation.id
        return conversation.id

    async def get_messages(self) -> List[Dict[str, str]]:
        """Conversation history as provider chat messages."""
        if not self.conversation_id:
            return []
        messages = await self.conversations.list_messages(self.conversation_id)
        return [{"role": m.role, "content": m.content} for m in messages]

    async def save_message(self, role: str, content: str, usage: Optional[TokenUsage] = None,
                           model: Optional[str] = None, latency_ms: Optional[int] = None) -> None:
        """Persist one turn, creating the conversation on first use.

        Raises:
            ValueError: If role is not user, assistant or system
        """
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role}")
        conversation_id = await self.get_or_create_conversation()
        usage = usage or TokenUsage()
        await self.conversations.add_message(ChatMessage(
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=self._now(),
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            model=model,
            latency_ms=latency_ms
        ))

    async def stream_chat(
        self,
        user_message: str,
        system_prompt: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> UsageStream:
        """Save the user's turn and stream a reply over the full history.

        Admission runs inside the gateway after the user turn is saved, so a
        denied request still leaves the user's message in the conversation.
        """
        await self.save_message("user", user_message)
        history = await self.get_messages()
        return await self.gateway.stream_text(
            self.actor_id,
            self.group_id,
            CHAT_FEATURE,
            messages=history,
            system_prompt=system_prompt,
            cancel_token=cancel_token
        )

    async def save_assistant_response(self, content: str, usage: Optional[TokenUsage] = None,
                                      model: Optional[str] = None, latency_ms: Optional[int] = None) -> None:
        await self.save_message("assistant", content, usage, model=model, latency_ms=latency_ms)
