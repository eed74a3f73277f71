"""
日志系统

structlog 负责事件字典，标准库 logging 负责分发:
    - 控制台: rich 渲染的彩色单行输出，模块可注册颜色 / 别名
    - 文件:   logs/ 下的 JSONL，每行一个 orjson 序列化的事件，按大小切分、按天数清理
两路输出都挂在同一个后台队列监听线程上，推流时写日志不阻塞事件循环。

配置来自 config/bot_config.toml 的 [log] 表，文件不存在时使用默认值。
"""

import logging
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from io import StringIO
from logging.handlers import QueueHandler, QueueListener
from pathlib import Path
from queue import SimpleQueue

import orjson
import structlog
import tomlkit
from rich.console import Console
from rich.text import Text

CONFIG_PATH = Path("config/bot_config.toml")
LOG_DIR = Path("logs")


@dataclass
class LogSettings:
    date_style: str = "m-d H:i:s"
    log_level_style: str = "lite"  # lite / compact / full
    color_text: str = "full"  # none / title / full
    log_level: str = "INFO"
    console_log_level: str | None = None
    file_log_level: str | None = None
    file_retention_days: int = 30  # 0=禁用文件日志，-1=永不删除
    file_max_bytes: int = 5 * 1024 * 1024
    suppress_libraries: list[str] = field(
        default_factory=lambda: ["websockets", "httpx", "httpcore", "openai", "aiosqlite", "asyncio"]
    )
    library_log_levels: dict[str, str] = field(default_factory=lambda: {"sqlalchemy": "WARNING"})

    @classmethod
    def load(cls, path: Path = CONFIG_PATH) -> "LogSettings":
        if not path.exists():
            return cls()
        try:
            with open(path, encoding="utf-8") as f:
                table = tomlkit.load(f).get("log")
        except Exception as e:
            print(f"[日志系统] 读取 {path} 失败，使用默认日志配置: {e}")
            return cls()
        if table is None:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in table.unwrap().items() if k in known})

    @property
    def console_level(self) -> int:
        return _level_number(self.console_log_level or self.log_level)

    @property
    def file_level(self) -> int:
        return _level_number(self.file_log_level or self.log_level)

    @property
    def file_enabled(self) -> bool:
        return self.file_retention_days != 0

    def strftime_format(self) -> str:
        """m-d H:i:s 风格转换为 strftime 格式"""
        fmt = self.date_style
        for token, directive in (("Y", "%Y"), ("m", "%m"), ("d", "%d"), ("H", "%H"), ("i", "%M"), ("s", "%S")):
            fmt = fmt.replace(token, directive)
        return fmt


def _level_number(name: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


# ==================== 文件输出 ====================


class JsonlFileHandler(logging.Handler):
    """写入 logs/app_<时间戳>.log.jsonl，超过 max_bytes 后切到新文件"""

    PATTERN = "app_*.log.jsonl"

    def __init__(self, log_dir: Path, max_bytes: int, retention_days: int):
        super().__init__()
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self.retention_days = retention_days
        self._write_lock = threading.Lock()
        self._written = 0
        self.path = self._new_path()
        self._stream = open(self.path, "a", encoding="utf-8")
        self.purge_expired()

    def _new_path(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        path = self.log_dir / f"app_{stamp}.log.jsonl"
        suffix = 1
        while path.exists():
            path = self.log_dir / f"app_{stamp}_{suffix}.log.jsonl"
            suffix += 1
        return path

    def _rotate(self):
        self._stream.close()
        self.path = self._new_path()
        self._stream = open(self.path, "a", encoding="utf-8")
        self._written = 0
        self.purge_expired()

    def purge_expired(self):
        """删除超过保留天数的旧日志文件"""
        if self.retention_days < 0:
            return
        cutoff = (datetime.now() - timedelta(days=self.retention_days)).timestamp()
        for old in self.log_dir.glob(self.PATTERN):
            if old == self.path:
                continue
            try:
                if old.stat().st_mtime < cutoff:
                    old.unlink(missing_ok=True)
            except OSError as e:
                print(f"[日志系统] 清理旧日志 {old.name} 失败: {e}")

    def emit(self, record):
        try:
            line = self.format(record) + "\n"
            with self._write_lock:
                if self._stream.closed:
                    return
                if self._written >= self.max_bytes:
                    self._rotate()
                self._stream.write(line)
                self._stream.flush()
                self._written += len(line.encode("utf-8"))
        except Exception:
            self.handleError(record)

    def close(self):
        with self._write_lock:
            if not self._stream.closed:
                self._stream.close()
        super().close()


# ==================== 控制台输出 ====================

LEVEL_COLORS = {
    "debug": "#D78700",
    "info": "#87D7FF",
    "warning": "#FFFF00",
    "error": "#FF0000",
    "critical": "#FF00FF",
}

# 各子系统的默认显示颜色与别名，get_logger(color=, alias=) 可覆盖
MODULE_STYLES: dict[str, tuple[str, str | None]] = {
    "main": ("#FFFFFF", "主系统"),
    "config": ("#FFFF00", "配置"),
    "database": ("#6C6C6C", "数据库"),
    "memory_store": ("#87D7FF", "记忆库"),
    "moderation": ("#FF5F5F", "审核"),
    "rate_limiter": ("#D78700", "限流"),
    "persona": ("#5F87FF", "人格"),
    "emotion_mapper": ("#FFAFD7", "表情"),
    "connection": ("#5FD7FF", "连接"),
    "scene_control": ("#00D7FF", "场景控制"),
    "avatar_control": ("#FF87FF", "形象控制"),
    "twitch_chat": ("#AF00FF", "Twitch"),
    "throttler": ("#005FFF", "发送队列"),
    "highlights": ("#FFAF00", "高光"),
    "show_flow": ("#00FF87", "节目流程"),
    "reaction": ("#00FF00", "反应"),
    "actions": ("#FF8700", "动作"),
    "generation": ("#008080", "生成"),
    "best_effort": ("#585858", "后台任务"),
}

_meta_lock = threading.Lock()
_custom_styles: dict[str, dict[str, str]] = {}

_RESERVED_KEYS = frozenset({"timestamp", "level", "logger_name", "event", "color", "alias"})


def _style_for(name: str) -> tuple[str | None, str]:
    """返回 (颜色, 显示名)"""
    default_color, default_alias = MODULE_STYLES.get(name, (None, None))
    with _meta_lock:
        custom = _custom_styles.get(name, {})
    return custom.get("color", default_color), custom.get("alias") or default_alias or name


def _to_text(value) -> str:
    if isinstance(value, dict | list):
        try:
            return orjson.dumps(value, default=str).decode("utf-8")
        except TypeError:
            return str(value)
    return str(value)


class ConsoleLineRenderer:
    """把事件字典渲染成一行带颜色的文本"""

    def __init__(self, settings: LogSettings):
        self.settings = settings
        self._buffer = StringIO()
        self._console = Console(
            file=self._buffer, force_terminal=True, color_system="truecolor", width=999, highlight=False
        )
        self._render_lock = threading.Lock()

    def __call__(self, logger, method_name, event_dict) -> str:
        colored = self.settings.color_text != "none"
        level = str(event_dict.get("level", "info")).lower()
        level_color = LEVEL_COLORS.get(level, "") if colored else ""
        style = self.settings.log_level_style

        line = Text()
        timestamp = event_dict.get("timestamp")
        if timestamp:
            line.append(f"{timestamp} ", style=level_color if style == "lite" else "")
        if style == "full":
            line.append(f"[{level.upper():>8}] ", style=level_color)
        elif style == "compact":
            line.append(f"[{level[0].upper()}] ", style=level_color)

        module_color = ""
        name = event_dict.get("logger_name")
        if name:
            color, display = _style_for(name)
            module_color = (color or "") if colored else ""
            line.append(f"[{display}] ", style=module_color)

        body_style = module_color if self.settings.color_text == "full" else ""
        body = _to_text(event_dict.get("event", ""))
        try:
            line.append_text(Text.from_markup(body, style=body_style))
        except Exception:
            line.append(body, style=body_style)

        for key, value in event_dict.items():
            if key not in _RESERVED_KEYS:
                line.append(f" {key}={_to_text(value)}", style=body_style)

        with self._render_lock:
            self._console.print(line, end="")
            rendered = self._buffer.getvalue()
            self._buffer.seek(0)
            self._buffer.truncate()
        return rendered


def attach_module_style(logger, method_name, event_dict):
    """JSON 输出中附带 color / alias，便于外部查看器着色"""
    name = event_dict.get("logger_name")
    if name:
        color, display = _style_for(name)
        if color:
            event_dict["color"] = color
        if display != name:
            event_dict["alias"] = display
    return event_dict


# ==================== 组装 ====================


class _BackgroundListener(QueueListener):
    """守护线程版监听器，进程退出时不会卡在 join 上"""

    def start(self):
        self._thread = threading.Thread(target=self._monitor, name="log-listener", daemon=True)  # type: ignore[attr-defined]
        self._thread.start()

    def stop(self):
        thread = getattr(self, "_thread", None)
        if thread is None:
            return
        self.enqueue_sentinel()
        thread.join(timeout=1.5)
        self._thread = None


class _PassthroughQueueHandler(QueueHandler):
    def prepare(self, record):
        # 不提前格式化，ProcessorFormatter 需要原始的事件字典
        return record


def _pre_chain(timestamper) -> list:
    return [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        timestamper,
    ]


def _json_serializer(obj, **kwargs) -> str:
    return orjson.dumps(obj, default=str).decode("utf-8")


settings = LogSettings.load()

_handlers: list[logging.Handler] = []
_listener: _BackgroundListener | None = None
_bound_loggers: dict[str, structlog.stdlib.BoundLogger] = {}


def _build_handlers(conf: LogSettings) -> list[logging.Handler]:
    console = logging.StreamHandler()
    console.setLevel(conf.console_level)
    console.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=ConsoleLineRenderer(conf),
            foreign_pre_chain=_pre_chain(structlog.processors.TimeStamper(fmt=conf.strftime_format(), utc=False)),
        )
    )
    handlers: list[logging.Handler] = [console]

    if conf.file_enabled:
        file_handler = JsonlFileHandler(LOG_DIR, conf.file_max_bytes, conf.file_retention_days)
        file_handler.setLevel(conf.file_level)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(serializer=_json_serializer),
                foreign_pre_chain=_pre_chain(structlog.processors.TimeStamper(fmt="iso")),
            )
        )
        handlers.append(file_handler)
    return handlers


def _apply_library_levels(conf: LogSettings):
    logging.getLogger().setLevel(min(conf.console_level, conf.file_level))
    for name in conf.suppress_libraries:
        noisy = logging.getLogger(name)
        noisy.setLevel(logging.CRITICAL + 1)
        noisy.propagate = False
    for name, level in conf.library_log_levels.items():
        logging.getLogger(name).setLevel(_level_number(level, logging.WARNING))


def _release_handlers():
    global _listener
    if _listener is not None:
        _listener.stop()
        _listener = None
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in _handlers:
        handler.close()
    _handlers.clear()


def _install(conf: LogSettings):
    global _listener
    _release_handlers()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt=conf.strftime_format(), utc=False),
            attach_module_style,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    _handlers.extend(_build_handlers(conf))
    queue: SimpleQueue[logging.LogRecord] = SimpleQueue()
    _listener = _BackgroundListener(queue, *_handlers, respect_handler_level=True)
    _listener.start()
    logging.getLogger().addHandler(_PassthroughQueueHandler(queue))
    _apply_library_levels(conf)


# 导入即生效，保证最早的日志也走统一格式
_install(settings)


def get_logger(name: str, *, color: str | None = None, alias: str | None = None) -> structlog.stdlib.BoundLogger:
    """获取绑定了 logger_name 的 structlog logger。

    color 为 #RRGGBB，alias 为控制台显示名；重复调用只覆盖传入的字段。
    """
    if color is not None or alias is not None:
        with _meta_lock:
            custom = _custom_styles.setdefault(name, {})
            if color is not None:
                custom["color"] = color.upper() if color.startswith("#") else color
            if alias is not None:
                custom["alias"] = alias
    logger = _bound_loggers.get(name)
    if logger is None:
        logger = structlog.get_logger(name).bind(logger_name=name)
        _bound_loggers[name] = logger
    return logger


def initialize_logging(path: Path | None = None):
    """重新读取 [log] 配置并重建输出，在程序早期调用"""
    global settings
    settings = LogSettings.load(path or CONFIG_PATH)
    _install(settings)

    if not settings.file_enabled:
        retention = "文件日志已禁用"
    elif settings.file_retention_days < 0:
        retention = "永不删除"
    else:
        retention = f"保留 {settings.file_retention_days} 天"
    get_logger("logger").info(
        f"日志系统已初始化: 控制台 {logging.getLevelName(settings.console_level)}，"
        f"文件 {logging.getLevelName(settings.file_level)}，{retention}"
    )


def shutdown_logging():
    """停止监听线程并关闭所有文件句柄"""
    get_logger("logger").info("正在关闭日志系统...")
    _release_handlers()
