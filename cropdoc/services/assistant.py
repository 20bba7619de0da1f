"""
Conversational Assistant

AssistantClient.converse() is stateless: the caller hands over the full chat
log on every call. AssistantPanel is the caller that owns a log for one open
side panel and one diagnostic context.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from cropdoc.config import API_TIMEOUT, ASSISTANT_HISTORY_WINDOW
from cropdoc.errors import AssistantError
from cropdoc.models import ChatMessage, ChatRole, DiagnosticContext
from cropdoc.services.gateway import ChatCapability

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "You are a professional, friendly, and highly knowledgeable Agricultural AI. "
    "You provide evidence-based advice on crop protection, organic alternatives, "
    "and integrated pest management (IPM). Keep responses structured and practical."
)

EMPTY_REPLY_FALLBACK = "I'm sorry, I'm having trouble processing that right now. Could you please rephrase?"
CONNECTION_FALLBACK = "Connection error. Please check your network and try again."

GENERIC_GREETING = (
    "Hello! I'm your AI Agricultural Assistant. Feel free to ask me anything about "
    "crop health, pest management, or sustainable farming."
)


def build_greeting(context: Optional[DiagnosticContext]) -> str:
    if context is None:
        return GENERIC_GREETING
    return (
        f"Hello! I see you're dealing with {context.disease} on your {context.crop}. "
        "How can I help you manage this specific condition today?"
    )


def build_priming(context: Optional[DiagnosticContext]) -> str:
    if context is None:
        context_prompt = "Context: General agricultural inquiry."
    else:
        result = context.result
        context_prompt = (
            f"Current Context: The user is analyzing a {result.crop} showing signs of {result.disease}. "
            f"Severity is {result.severity.value}. Symptoms include: {', '.join(result.symptoms)}."
        )
    return f"You are an expert Agronomist. {context_prompt} Answer the user's question concisely and scientifically."


class AssistantClient:
    def __init__(self, chat: ChatCapability, timeout: Optional[float] = API_TIMEOUT, history_window: int = ASSISTANT_HISTORY_WINDOW):
        self.chat_capability = chat
        self.timeout = timeout
        self.history_window = history_window

    def build_messages(self, history: Sequence[ChatMessage], new_message: str, context: Optional[DiagnosticContext] = None) -> List[Dict[str, str]]:
        """System instruction, priming turn, recent log, then the new user turn"""
        recent = list(history)[-self.history_window:] if self.history_window else list(history)
        messages = [
            {"role": "system", "content": SYSTEM_INSTRUCTION},
            {"role": "user", "content": build_priming(context)},
        ]
        messages.extend({"role": m.role.value, "content": m.text} for m in recent)
        messages.append({"role": "user", "content": new_message})
        return messages

    async def converse(self, history: Sequence[ChatMessage], new_message: str, context: Optional[DiagnosticContext] = None) -> str:
        """Always resolves to displayable text; failures become fallback messages"""
        messages = self.build_messages(history, new_message, context)
        try:
            reply = await self._dispatch(messages)
        except AssistantError as e:
            logger.error(f"Chat error: {e}")
            return CONNECTION_FALLBACK

        if not reply or not reply.strip():
            logger.warning("Assistant returned an empty reply")
            return EMPTY_REPLY_FALLBACK
        return reply.strip()

    async def _dispatch(self, messages: List[Dict[str, str]]) -> Optional[str]:
        try:
            return await asyncio.wait_for(self.chat_capability.chat(messages), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise AssistantError(f"Assistant timeout after {self.timeout} seconds") from e
        except Exception as e:
            raise AssistantError(str(e) or type(e).__name__) from e


class AssistantPanel:
    """Chat log for one open assistant panel.

    The log is discarded on close and whenever the diagnostic context it was
    opened with changes identity.
    """

    def __init__(self, client: AssistantClient):
        self.client = client
        self.is_open = False
        self.context: Optional[DiagnosticContext] = None
        self.messages: List[ChatMessage] = []

    def open(self, context: Optional[DiagnosticContext] = None) -> List[ChatMessage]:
        if self.is_open and context == self.context and self.messages:
            return list(self.messages)
        self.is_open = True
        self.context = context
        self.messages = [ChatMessage(ChatRole.ASSISTANT, build_greeting(context))]
        return list(self.messages)

    def close(self):
        self.is_open = False
        self.context = None
        self.messages = []

    def sync_context(self, context: Optional[DiagnosticContext]) -> bool:
        """Reset the log if the context changed; returns True when it did"""
        if context == self.context:
            return False
        logger.info("Diagnostic context changed - resetting assistant chat")
        if self.is_open:
            self.open(context)
        else:
            self.context = context
            self.messages = []
        return True

    async def send(self, text: str) -> Optional[ChatMessage]:
        text = text.strip()
        if not text:
            return None
        if not self.is_open:
            self.open(self.context)

        log = self.messages
        prior = list(log)
        log.append(ChatMessage(ChatRole.USER, text))
        reply_text = await self.client.converse(prior, text, self.context)
        reply = ChatMessage(ChatRole.ASSISTANT, reply_text)
        # panel closed or context changed while waiting: the old log is gone
        if log is self.messages:
            log.append(reply)
        return reply
