import logging
import os
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional


class Logger:
    """封装 chatloom 日志配置，文件与控制台级别分开设置"""

    def __init__(
        self,
        name: str = 'chatloom',
        level: int = logging.DEBUG,
        console_level: Optional[int] = logging.INFO,
        log_dir: Optional[str] = None,
    ) -> None:
        project_root = Path(__file__).parent.parent.parent.parent.resolve()
        self.log_dir = log_dir or os.getenv('CHATLOOM_LOG_DIR') or os.path.join(project_root, 'logs')
        self.file_level = level
        self.console_level = console_level if console_level is not None else level

        self.logger = logging.getLogger(name)
        self.logger.setLevel(min(self.file_level, self.console_level))
        self.logger.propagate = False

        if not self.logger.handlers:
            self._setup_handlers()

    def _setup_handlers(self) -> None:
        if not os.path.exists(self.log_dir):
            os.makedirs(self.log_dir)

        formatter = logging.Formatter(
            fmt='%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        )

        log_file = os.path.join(self.log_dir, 'chatloom.log')
        file_handler = TimedRotatingFileHandler(
            filename=log_file,
            when='midnight',
            interval=1,
            backupCount=30,
            encoding='utf-8',
        )
        file_handler.setLevel(self.file_level)
        file_handler.setFormatter(formatter)
        file_handler.suffix = '%Y-%m-%d'

        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.console_level)
        console_handler.setFormatter(formatter)

        self.logger.addHandler(file_handler)
        self.logger.addHandler(console_handler)

    def set_console_level(self, level: str) -> None:
        """按名称调整控制台级别（配置里的 log_level）"""
        numeric = logging.getLevelName(level.upper())
        if not isinstance(numeric, int):
            return
        for handler in self.logger.handlers:
            if not isinstance(handler, TimedRotatingFileHandler):
                handler.setLevel(numeric)

    def debug(self, message: str) -> None:
        self.logger.debug(message, stacklevel=2)

    def info(self, message: str) -> None:
        self.logger.info(message, stacklevel=2)

    def warning(self, message: str) -> None:
        self.logger.warning(message, stacklevel=2)

    def error(self, message: str, exc_info: bool = False) -> None:
        self.logger.error(message, exc_info=exc_info, stacklevel=2)


logger = Logger()
