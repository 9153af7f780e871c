"""数据库引擎与事务管理"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import StoreFailure
from ..utils.logger import logger
from .models import Base


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_sqlite_memory(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


class Database:
    """包装 engine 与 session 工厂

    所有写操作都经过 session_scope()：成功提交，异常回滚，
    SQLAlchemy 错误统一转换为 StoreFailure。
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        kwargs = {"echo": echo}
        if _is_sqlite(url):
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 15}
            if _is_sqlite_memory(url):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        if _is_sqlite(url):
            self._enable_sqlite_transactions()
        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def _enable_sqlite_transactions(self) -> None:
        # pysqlite 默认延迟 BEGIN 到第一条写语句，读-改-写会落在事务外
        @event.listens_for(self.engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(self.engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    def create_all(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """事务作用域"""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"数据库操作失败: {e}")
            raise StoreFailure(f"store operation failed: {e.__class__.__name__}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def init_db(url: str, echo: bool = False) -> Database:
    """创建数据库并建表"""
    database = Database(url, echo=echo)
    database.create_all()
    return database
