"""测试公共夹具"""

import os
import sys
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

# 添加 src 到路径，未安装时也能直接运行
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
os.environ.setdefault("CHATLOOM_LOG_DIR", tempfile.mkdtemp(prefix="chatloom-logs-"))

from chatloom.config import Config
from chatloom.model_client import ChatResponse, TextGenerator, TokenUsage
from chatloom.store import Database, MemoryStore, MessageStore, RoomLocks


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'chatloom.db'}"


@pytest.fixture
def db(db_url):
    """文件型 SQLite 数据库"""
    database = Database(db_url)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def store(db):
    return MessageStore(db, RoomLocks(timeout=2.0))


@pytest.fixture
def memory_store(db):
    return MemoryStore(db)


@pytest.fixture
def config(db_url):
    return Config(
        database_url=db_url,
        api_key="test-key",
        summary_timeout=1.0,
        _env_file=None,
    )


@pytest.fixture
def mock_generator():
    """固定返回一条回复的生成器"""
    generator = AsyncMock(spec=TextGenerator)
    generator.generate.return_value = ChatResponse(
        content="好的，我记住了。",
        token_usage=TokenUsage(input_tokens=20, output_tokens=5, total_tokens=25),
    )
    return generator


def make_chain(store, room_id, count, start=0):
    """在活动路径上追加 count 条交替的 user/assistant 消息"""
    turns = []
    for i in range(start, start + count):
        role = "user" if i % 2 == 0 else "assistant"
        turns.append(store.append_to_active_path(room_id, role, f"message {i + 1}"))
    return turns


@pytest.fixture
def chain():
    return make_chain
