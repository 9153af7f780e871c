"""文本生成客户端

对话流程和摘要都只依赖 TextGenerator 接口：文本进，文本出。
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from .config import Config
from .errors import UpstreamFailure
from .utils.logger import logger


@dataclass
class TokenUsage:
    """Token使用情况"""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def is_zero(self) -> bool:
        return self.total_tokens == 0


@dataclass
class GenerationOptions:
    """单次生成的参数，None 表示使用客户端默认值"""
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChatResponse:
    """聊天响应"""
    content: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: str = "stop"
    model: Optional[str] = None


class TextGenerator(ABC):
    """文本生成协作方接口"""

    @abstractmethod
    async def generate(
        self,
        system_prompt: Optional[str],
        messages: List[Dict[str, str]],
        options: Optional[GenerationOptions] = None,
    ) -> ChatResponse:
        """根据系统提示词和消息列表生成回复

        失败时抛出 UpstreamFailure。
        """
        pass


class OpenAIGenerator(TextGenerator):
    """基于 OpenAI 兼容接口的生成器"""

    def __init__(self, config: Config, client: Optional[AsyncOpenAI] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        # 首次生成时才创建，只读命令不需要 API Key
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.api_base,
            )
        return self._client

    @staticmethod
    def _build_messages(system_prompt: Optional[str], messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        payload = []
        if system_prompt:
            payload.append({"role": "system", "content": system_prompt})
        for msg in messages:
            payload.append({"role": msg["role"], "content": msg["content"]})
        return payload

    async def generate(
        self,
        system_prompt: Optional[str],
        messages: List[Dict[str, str]],
        options: Optional[GenerationOptions] = None,
    ) -> ChatResponse:
        options = options or GenerationOptions()
        model = options.model or self.config.model
        payload = self._build_messages(system_prompt, messages)
        logger.debug(f"发送消息到模型 {model}: {len(payload)} 条")

        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=payload,
                max_tokens=options.max_tokens or self.config.max_tokens,
                temperature=options.temperature if options.temperature is not None else self.config.temperature,
                **options.extra,
            )
        except Exception as e:
            raise UpstreamFailure(f"模型请求失败: {e}", {"model": model}) from e

        if not response.choices:
            raise UpstreamFailure("模型没有返回任何结果", {"model": model})

        choice = response.choices[0]
        usage = response.usage
        token_usage = TokenUsage(
            input_tokens=usage.prompt_tokens,
            output_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        ) if usage else TokenUsage()

        logger.debug(f"Token使用情况: {token_usage}")
        logger.debug(f"完成原因: {choice.finish_reason}")

        return ChatResponse(
            content=choice.message.content or "",
            token_usage=token_usage,
            finish_reason=choice.finish_reason or "stop",
            model=model,
        )
