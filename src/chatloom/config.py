"""chatloom 配置管理 - 基于 pydantic-settings

配置优先级（从高到低）：
1. 代码传入参数
2. .env 文件
3. 系统环境变量
4. 默认值
"""

import os
from pathlib import Path
from typing import Optional, Dict, Any, Literal, Tuple
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict, PydanticBaseSettingsSource


DEFAULT_TOKEN_BUDGETS: Dict[str, int] = {
    "gpt-3.5-turbo": 3000,
    "gpt-4": 6000,
    "claude-3-haiku-20240307": 150000,
    "claude-3-5-sonnet-20241022": 150000,
}


class Config(BaseSettings):
    """配置类 - 支持 .env 文件和环境变量"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CHATLOOM_",
        case_sensitive=False,
        extra="ignore",
    )

    # 存储
    database_url: str = Field(default="sqlite:///data/chatloom.db", description="SQLAlchemy 连接串")

    # 对话模型
    model: str = Field(default="gpt-4o-mini", description="对话模型名称")
    api_key: Optional[str] = Field(default=None, validate_default=True, description="API密钥")
    api_base: Optional[str] = Field(default=None, description="API基础URL")
    temperature: float = Field(default=0.8, ge=0.0, le=2.0, description="对话采样温度")
    max_tokens: int = Field(default=1024, ge=1, le=128000, description="单次回复最大token数")

    # 摘要
    summary_model: str = Field(default="gpt-3.5-turbo", description="摘要模型")
    summary_temperature: float = Field(default=0.3, ge=0.0, le=2.0, description="摘要采样温度")
    summary_timeout: float = Field(default=30.0, gt=0, description="摘要调用超时(秒)，不重试")
    summary_threshold: int = Field(default=20, ge=1, description="触发摘要的新消息数")
    max_turns_per_summary: int = Field(default=20, ge=1, description="单次摘要最多覆盖的消息数")

    # 记忆维护
    memory_keep_count: int = Field(default=10, ge=0, description="清理后保留的记忆条数")
    cleanup_after_summary: bool = Field(default=True, description="摘要成功后是否执行清理")
    enable_fact_extraction: bool = Field(default=False, description="每轮对话后抽取用户事实")

    # 上下文组装
    context_policy: Literal["simple", "smart"] = Field(default="simple", description="上下文组装策略")
    max_recent_turns: int = Field(default=10, ge=0, le=200, description="最多带入的最近消息数")
    default_token_budget: int = Field(default=3000, ge=1, description="未知模型的token预算")
    token_budgets: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TOKEN_BUDGETS))
    chars_per_token: int = Field(default=3, ge=1, le=10, description="token估算的字符比")

    # 并发
    branch_lock_timeout: float = Field(default=5.0, gt=0, description="房间锁等待时间(秒)")

    # 展示
    user_label: str = Field(default="User", description="摘要中用户一方的称呼")

    # 日志
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置源优先级：代码传入 > .env文件 > 环境变量 > 默认值"""
        return init_settings, dotenv_settings, env_settings, file_secret_settings

    @field_validator("api_key", mode="before")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        """加载 API Key，支持 OPENAI_API_KEY"""
        if v:
            return v
        return os.getenv("OPENAI_API_KEY")

    @field_validator("token_budgets")
    @classmethod
    def validate_token_budgets(cls, v: Dict[str, int]) -> Dict[str, int]:
        for model, budget in v.items():
            if budget <= 0:
                raise ValueError(f"token budget for {model} must be positive")
        return v

    @model_validator(mode="after")
    def ensure_sqlite_dir_exists(self):
        """确保 SQLite 数据库所在目录存在"""
        prefix = "sqlite:///"
        if self.database_url.startswith(prefix):
            path = self.database_url[len(prefix):]
            if path and path != ":memory:":
                Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        return self

    def resolve_token_budget(self, model: Optional[str] = None, override: Optional[int] = None) -> int:
        """按模型查预算，显式传入的值优先"""
        if override:
            return override
        return self.token_budgets.get(model or self.model, self.default_token_budget)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """从字典创建配置"""
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（隐藏敏感信息）"""
        data = self.model_dump()
        if data.get("api_key"):
            data["api_key"] = "***" + data["api_key"][-4:] if len(data["api_key"]) > 4 else "***"
        return data
