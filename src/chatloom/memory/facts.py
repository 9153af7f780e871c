"""用户事实抽取"""

import asyncio
import json
import re
from typing import List

from ..config import Config
from ..model_client import GenerationOptions, TextGenerator
from ..utils.logger import logger


FACT_PROMPT = """Analyze the following conversation and extract important facts about the user ({user_label}) that should be remembered for future conversations.
Focus on: Name, preferences, hobbies, job, relationships, personal details.
Ignore: Small talk, greetings, transient feelings, questions.

Conversation:
{user_label}: {user_message}
AI: {reply}

Return a JSON object with a key "facts" containing an array of strings. Each string should be a concise fact.
If no important facts are found, return {{ "facts": [] }}.

Example output:
{{ "facts": ["User likes cats", "User's name is Cheolsu"] }}
"""

FACT_SYSTEM_PROMPT = "You are a helpful assistant."

_WS = re.compile(r"\s+")


def normalize_fact(text: str) -> str:
    """去重用的归一化：小写、压缩空白、去掉句尾标点"""
    return _WS.sub(" ", text.strip().lower()).rstrip(".!?。！？ ")


def parse_facts(raw: str) -> List[str]:
    """解析模型返回的 JSON，格式不对返回空列表"""
    text = (raw or "").strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        logger.warning(f"事实抽取结果不是合法 JSON: {raw[:200] if raw else raw!r}")
        return []
    facts = data.get("facts") if isinstance(data, dict) else None
    if not isinstance(facts, list):
        return []
    return [f.strip() for f in facts if isinstance(f, str) and f.strip()]


class FactExtractor:
    """从一轮对话中抽取值得长期记住的用户事实"""

    def __init__(self, generator: TextGenerator, config: Config):
        self.generator = generator
        self.config = config

    async def extract(self, user_message: str, reply: str) -> List[str]:
        prompt = FACT_PROMPT.format(
            user_label=self.config.user_label,
            user_message=user_message,
            reply=reply,
        )
        options = GenerationOptions(
            model=self.config.model,
            temperature=0.1,
            extra={"response_format": {"type": "json_object"}},
        )
        response = await asyncio.wait_for(
            self.generator.generate(FACT_SYSTEM_PROMPT, [{"role": "user", "content": prompt}], options),
            timeout=self.config.summary_timeout,
        )
        return parse_facts(response.content)
