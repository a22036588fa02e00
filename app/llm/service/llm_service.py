from typing import List, Optional

from app.chat.entity.chat import ChatMessage, KeyClass, KEY_CLASS_CUSTOM, KEY_CLASS_DEFAULT
from app.core.logger import get_logger
from app.llm.service.prompt import RESEARCH_ASSISTANT_SYSTEM_PROMPT
from app.llm.service.provider.base_provider import BaseProvider, ProviderStream

logger = get_logger(__name__)

CONVERSATION_ID_HEADER = "x-llm-conversation-id"


class LLMService:
    """Builds provider requests for chat turns and picks their credentials."""

    def __init__(self, provider: BaseProvider, system_prompt: str = RESEARCH_ASSISTANT_SYSTEM_PROMPT):
        self.provider = provider
        self.system_prompt = system_prompt

    @staticmethod
    def key_class(api_key: Optional[str]) -> KeyClass:
        return KEY_CLASS_CUSTOM if api_key else KEY_CLASS_DEFAULT

    def build_messages(self, history: List[ChatMessage], prompt: str) -> List[dict]:
        messages = [{"role": "system", "content": self.system_prompt}]
        messages.extend(m.history_entry() for m in history)
        messages.append({"role": "user", "content": prompt})
        return messages

    def open_turn_stream(
        self,
        history: List[ChatMessage],
        prompt: str,
        conversation_id: str,
        api_key: Optional[str] = None,
    ) -> ProviderStream:
        """Caller key wins over the process default; the request is sent lazily."""
        logger.info(
            f"Opening {self.provider.name} stream | conversation_id={conversation_id} "
            f"history={len(history)} key={self.key_class(api_key)}"
        )
        return self.provider.open_stream(
            self.build_messages(history, prompt),
            api_key=api_key,
            headers={CONVERSATION_ID_HEADER: conversation_id},
        )
