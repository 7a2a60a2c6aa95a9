"""
SOCKS5 转发代理 - 日志管理模块

功能概述:
1. 多级别日志记录（DEBUG, INFO, WARNING, ERROR, CRITICAL）
2. 日志轮转（按日期/大小）
3. 结构化日志格式（时间戳、级别、会话上下文）
4. 配置文件和环境变量支持
5. 可选的 systemd journal 输出

会话上下文保存在 contextvars 中。asyncio 为每个任务复制上下文，
因此并发会话各自的 session_id / client 不会互相覆盖。
"""

import contextvars
import logging
import logging.handlers
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

try:
    from systemd.journal import JournalHandler
    HAS_JOURNAL = True
except ImportError:
    HAS_JOURNAL = False


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(context)s] - %(message)s"

_log_context: contextvars.ContextVar = contextvars.ContextVar('socks5_forward_log_context', default={})


@dataclass
class LogConfig:
    """
    日志配置数据类

    Attributes:
        level: 日志级别（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        log_dir: 日志存储目录
        log_file: 日志文件名
        max_bytes: 单个日志文件最大大小（字节）
        backup_count: 保留的备份文件数量
        rotation_type: 轮转类型（size, date, none）
        format_string: 日志格式字符串
        enable_console: 是否输出到控制台
        enable_file: 是否输出到文件
        enable_journal: 是否输出到系统日志
        context_fields: 上下文字段列表
    """
    level: str = "INFO"
    log_dir: str = "logs"
    log_file: str = "socks5-forward.log"
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 10
    rotation_type: str = "size"  # size, date, none
    format_string: str = DEFAULT_FORMAT
    enable_console: bool = True
    enable_file: bool = False
    enable_journal: bool = False
    context_fields: list = None

    def __post_init__(self):
        if self.context_fields is None:
            self.context_fields = ["session_id", "client"]

    @classmethod
    def from_dict(cls, log_config: Optional[Dict[str, Any]]) -> 'LogConfig':
        """
        由配置字典构造，LOG_* 环境变量优先

        Args:
            log_config: 配置文件中的 logging 段
        """
        log_config = log_config or {}
        defaults = cls()

        def flag(env: str, key: str, default: bool) -> bool:
            return os.getenv(env, str(log_config.get(key, default))).lower() == 'true'

        return cls(
            level=os.getenv('LOG_LEVEL', log_config.get('level', defaults.level)),
            log_dir=os.getenv('LOG_DIR', log_config.get('log_dir', defaults.log_dir)),
            log_file=os.getenv('LOG_FILE', log_config.get('log_file', defaults.log_file)),
            max_bytes=int(os.getenv('LOG_MAX_BYTES', log_config.get('max_bytes', defaults.max_bytes))),
            backup_count=int(os.getenv('LOG_BACKUP_COUNT', log_config.get('backup_count', defaults.backup_count))),
            rotation_type=os.getenv('LOG_ROTATION_TYPE', log_config.get('rotation_type', defaults.rotation_type)),
            format_string=os.getenv('LOG_FORMAT', log_config.get('format_string', defaults.format_string)),
            enable_console=flag('LOG_ENABLE_CONSOLE', 'enable_console', defaults.enable_console),
            enable_file=flag('LOG_ENABLE_FILE', 'enable_file', defaults.enable_file),
            enable_journal=flag('LOG_ENABLE_JOURNAL', 'enable_journal', defaults.enable_journal),
            context_fields=log_config.get('context_fields', defaults.context_fields),
        )


class ContextFilter(logging.Filter):
    """
    上下文过滤器

    把当前任务的上下文字段写入 record.context
    """

    def __init__(self, context_fields: list = None):
        super().__init__()
        self.context_fields = context_fields or []

    def filter(self, record):
        context_data = _log_context.get()
        context_parts = []
        for field_name in self.context_fields:
            value = context_data.get(field_name, "-")
            context_parts.append(f"{field_name}={value}")

        record.context = " | ".join(context_parts)
        return True


class LogFormatter(logging.Formatter):
    """
    自定义日志格式化器

    支持彩色输出和结构化格式
    """

    COLORS = {
        'DEBUG': '\033[36m',      # 青色
        'INFO': '\033[32m',       # 绿色
        'WARNING': '\033[33m',    # 黄色
        'ERROR': '\033[31m',      # 红色
        'CRITICAL': '\033[35m',   # 紫色
    }
    RESET = '\033[0m'

    def __init__(self, fmt=None, datefmt=None, style='%', use_color=False):
        super().__init__(fmt, datefmt, style)
        self.use_color = use_color

    def format(self, record):
        # 未经过 ContextFilter 的记录（例如第三方处理器）
        if not hasattr(record, 'context'):
            record.context = "-"

        levelname = record.levelname
        if self.use_color and levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{self.RESET}"

        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class LoggerManager:
    """
    日志管理器

    管理日志系统的初始化和处理器配置
    """

    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            self.config = None
            self.context_filter = None
            self._initialized = True

    def load_config_from_file(self, config_file: str) -> LogConfig:
        """
        从配置文件的 logging 段加载日志配置

        文件不存在或无法解析时只使用环境变量和默认值。
        """
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            config_data = {}
        except yaml.YAMLError as e:
            print(f"加载日志配置文件失败: {e}，使用环境变量配置", file=sys.stderr)
            config_data = {}

        return LogConfig.from_dict(config_data.get('logging'))

    def initialize(self, config: Optional[LogConfig] = None, config_file: Optional[str] = None):
        """
        初始化日志系统

        Args:
            config: 日志配置对象（可选）
            config_file: 配置文件路径（可选）
        """
        if config:
            self.config = config
        elif config_file:
            self.config = self.load_config_from_file(config_file)
        else:
            self.config = LogConfig.from_dict(None)

        self.context_filter = ContextFilter(self.config.context_fields)
        self._setup_root_logger()

    @property
    def level(self) -> int:
        return getattr(logging, self.config.level.upper(), logging.INFO)

    def set_level(self, level: int):
        """运行时调整日志级别（例如 --debug）"""
        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        for handler in root_logger.handlers:
            handler.setLevel(level)

    def _setup_root_logger(self):
        root_logger = logging.getLogger()
        root_logger.setLevel(self.level)

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        if self.config.enable_console:
            self._add_console_handler(root_logger)

        if self.config.enable_file:
            self._add_file_handler(root_logger)

        if self.config.enable_journal and HAS_JOURNAL:
            self._add_journal_handler(root_logger)

    def _add_console_handler(self, logger: logging.Logger):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(self.level)
        console_handler.addFilter(self.context_filter)
        console_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=sys.stdout.isatty()
        ))
        logger.addHandler(console_handler)

    def _add_file_handler(self, logger: logging.Logger):
        """添加文件处理器（支持轮转）"""
        log_dir = Path(self.config.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / self.config.log_file

        if self.config.rotation_type == 'size':
            file_handler = logging.handlers.RotatingFileHandler(
                filename=log_file_path,
                maxBytes=self.config.max_bytes,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        elif self.config.rotation_type == 'date':
            file_handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file_path,
                when='midnight',
                interval=1,
                backupCount=self.config.backup_count,
                encoding='utf-8'
            )
        else:
            file_handler = logging.FileHandler(
                filename=log_file_path,
                encoding='utf-8'
            )

        file_handler.setLevel(self.level)
        file_handler.addFilter(self.context_filter)
        file_handler.setFormatter(LogFormatter(
            fmt=self.config.format_string,
            datefmt='%Y-%m-%d %H:%M:%S',
            use_color=False
        ))
        logger.addHandler(file_handler)

    def _add_journal_handler(self, logger: logging.Logger):
        journal_handler = JournalHandler(SYSLOG_IDENTIFIER='socks5-forward')
        journal_handler.setLevel(self.level)
        journal_handler.addFilter(self.context_filter)
        logger.addHandler(journal_handler)


def add_context(**kwargs) -> contextvars.Token:
    """
    为当前任务添加上下文信息

    Returns:
        contextvars.Token: 可传给 reset_context() 恢复之前的上下文
    """
    context_data = dict(_log_context.get())
    context_data.update(kwargs)
    return _log_context.set(context_data)


def reset_context(token: contextvars.Token):
    _log_context.reset(token)
