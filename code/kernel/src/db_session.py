"""
PuzzleGuard Database Session Manager
数据库会话管理器 - 统一管理数据库连接和会话
"""

from contextlib import contextmanager
from typing import Optional
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config.settings import DATABASE_URL, SQL_ECHO
from kernel.src.models import Base


class DatabaseManager:
    """数据库管理器"""

    def __init__(self, url: Optional[str] = None):
        self.url = url or DATABASE_URL
        self._engine = None
        self._session_factory = None
        self._initialize()

    def _initialize(self):
        """初始化数据库连接"""
        if self.url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            # 内存库需要共享同一连接
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            self._engine = create_engine(self.url, echo=SQL_ECHO, **kwargs)
        else:
            self._engine = create_engine(
                self.url,
                pool_size=10,
                max_overflow=20,
                pool_pre_ping=True,
                echo=SQL_ECHO
            )

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False
        )

        # 创建所有表
        Base.metadata.create_all(bind=self._engine)

    @property
    def engine(self):
        return self._engine

    def get_session(self) -> Session:
        """获取数据库会话"""
        return self._session_factory()

    @contextmanager
    def session_scope(self):
        """提供事务性会话上下文管理器"""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def close(self):
        """关闭数据库连接"""
        if self._engine:
            self._engine.dispose()


_db_manager: Optional[DatabaseManager] = None


def get_db_manager() -> DatabaseManager:
    """全局数据库管理器（首次调用时创建）"""
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager
