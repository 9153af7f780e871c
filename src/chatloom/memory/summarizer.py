"""对话摘要生成"""

import asyncio
from typing import List, Sequence

from ..config import Config
from ..errors import UpstreamFailure
from ..model_client import GenerationOptions, TextGenerator
from ..store.models import Turn


SUMMARY_PROMPT = """You are a conversation summarizer. Your task is to create a concise summary of the following conversation between a user and an AI character named "{persona_name}".

Focus on:
- Main topics discussed
- Important facts or information shared
- Key emotional moments or developments
- Character personality insights
- Any decisions or commitments made

Keep the summary concise (3-5 sentences) and factual.

Conversation:
{conversation}

Summary:"""


def importance_for(turn_count: int) -> int:
    """覆盖的消息越多，摘要越重要"""
    return min(10, 5 + turn_count // 4)


class Summarizer:
    """把一段消息压缩成摘要文本

    调用受 summary_timeout 限制，不重试。超时和生成失败统一抛 UpstreamFailure，
    由调用方决定是否吞掉。
    """

    def __init__(self, generator: TextGenerator, config: Config):
        self.generator = generator
        self.config = config

    def render(self, turns: Sequence[Turn], persona_name: str) -> str:
        lines: List[str] = []
        for turn in turns:
            speaker = persona_name if turn.role == "assistant" else self.config.user_label
            lines.append(f"{speaker}: {turn.content}")
        return "\n".join(lines)

    def build_prompt(self, turns: Sequence[Turn], persona_name: str) -> str:
        return SUMMARY_PROMPT.format(
            persona_name=persona_name,
            conversation=self.render(turns, persona_name),
        )

    async def summarize(self, turns: Sequence[Turn], persona_name: str) -> str:
        prompt = self.build_prompt(turns, persona_name)
        options = GenerationOptions(
            model=self.config.summary_model,
            temperature=self.config.summary_temperature,
        )
        try:
            response = await asyncio.wait_for(
                self.generator.generate(None, [{"role": "user", "content": prompt}], options),
                timeout=self.config.summary_timeout,
            )
        except asyncio.TimeoutError as e:
            raise UpstreamFailure(
                f"summary generation timed out after {self.config.summary_timeout}s",
                {"timeout": self.config.summary_timeout},
            ) from e

        text = (response.content or "").strip()
        if not text:
            raise UpstreamFailure("summary generation returned empty text")
        return text
