"""Conversation agent: replies to developers under the bot's review comments."""

import logging

from codeguardian.models.conversation import ChatMessage, ConversationState
from codeguardian.prompts.conversation_agent_prompt import (
    BUDGET_EXHAUSTED_REPLY,
    CONTEXT_ACKNOWLEDGEMENT,
    CONVERSATION_CONTEXT_PROMPT,
    EMPTY_REPLY,
)
from codeguardian.services.completer import ModelTier, ModelTiers
from codeguardian.services.scheduler import TaskScheduler
from codeguardian.utils.chunker import estimate_tokens

logger = logging.getLogger(__name__)

MAX_RESPONSE_LENGTH = 2000


def validate_conversation_response(response: str | None) -> str:
    """
    Validate and sanitize agent response before posting to GitHub.

    Args:
        response: Raw agent response string

    Returns:
        Validated and sanitized response ready for GitHub
    """
    if not response or not response.strip():
        logger.warning("Agent returned empty response")
        return EMPTY_REPLY

    cleaned_response = response.strip()

    if len(cleaned_response) > MAX_RESPONSE_LENGTH:
        logger.warning(
            f"Response too long ({len(cleaned_response)} chars), "
            f"truncating to {MAX_RESPONSE_LENGTH}"
        )
        cleaned_response = cleaned_response[:MAX_RESPONSE_LENGTH].rsplit(" ", 1)[0]
        cleaned_response += "\n\n[Response truncated due to length...]"

    return cleaned_response


class ConversationAgent:
    """
    Stateless reply generator over an explicit conversation log.

    Every reply replays the hunk context and the full retained history, so
    the caller never has to resend anything but the new message.
    """

    def __init__(
        self,
        tiers: ModelTiers,
        scheduler: TaskScheduler,
        language: str = "en-US",
        response_token_limit: int = 2000,
    ) -> None:
        self.tiers = tiers
        self.scheduler = scheduler
        self.language = language
        self.response_token_limit = response_token_limit

    def build_history(self, state: ConversationState) -> list[tuple[str, str]]:
        context = CONVERSATION_CONTEXT_PROMPT.format(
            path=state.hunk_context.path,
            diff_hunk=state.hunk_context.diff_hunk,
            original_comment=state.hunk_context.original_comment,
            language=self.language,
        )
        return [("user", context), ("assistant", CONTEXT_ACKNOWLEDGEMENT), *state.history]

    async def reply(
        self,
        thread_id: int,
        new_message: str,
        state: ConversationState,
        message_comment_id: int | None = None,
    ) -> tuple[str, ConversationState]:
        """
        Generate the bot's next message in a thread.

        One scheduled model call per invocation. The returned state has the
        developer message and the reply appended; ``state`` is unchanged.

        Raises:
            ValueError: If ``state`` belongs to another thread
            CallError: If the model call failed for good
        """
        if state.thread_id != thread_id:
            raise ValueError(
                f"Conversation state belongs to thread {state.thread_id}, not {thread_id}"
            )

        user_message = ChatMessage(role="user", text=new_message, comment_id=message_comment_id)
        history = self.build_history(state)
        # The budget counts thread messages only: each turn costs its message plus the reply
        message_tokens = estimate_tokens(new_message)

        if message_tokens >= state.token_budget_remaining:
            logger.warning(
                f"Thread {thread_id} exhausted its token budget "
                f"({state.token_budget_remaining} tokens left)"
            )
            response = BUDGET_EXHAUSTED_REPLY
            return response, state.append(
                user_message, ChatMessage(role="assistant", text=response)
            )

        completer = self.tiers.get(ModelTier.HEAVY)
        result = await self.scheduler.model.submit(
            lambda: completer.complete(
                new_message, max_tokens=self.response_token_limit, history=history
            ),
            label=f"conversation:{thread_id}",
        )
        response = validate_conversation_response(result.unwrap())

        tokens_used = message_tokens + estimate_tokens(response)
        logger.info(
            f"Replied in thread {thread_id} ({len(state.messages) + 2} messages, "
            f"{tokens_used} tokens)"
        )
        return response, state.append(
            user_message,
            ChatMessage(role="assistant", text=response),
            tokens_used=tokens_used,
        )
