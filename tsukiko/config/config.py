import os
import shutil

import tomlkit
from pydantic import Field
from rich.traceback import install

from tsukiko.common.logger import get_logger
from tsukiko.config.config_base import ValidatedConfigBase
from tsukiko.config.official_configs import (
    AvatarControlConfig,
    BotConfig,
    DatabaseConfig,
    ExpressionConfig,
    GenerationConfig,
    HighlightConfig,
    MemoryConfig,
    ModerationConfig,
    PersonaConfig,
    RateLimitConfig,
    ReactionConfig,
    RewardConfig,
    SceneControlConfig,
    ShowFlowConfig,
    ThrottleConfig,
    TwitchConfig,
)

install(extra_lines=3)

logger = get_logger("config")

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
CONFIG_DIR = os.path.join(PROJECT_ROOT, "config")
TEMPLATE_DIR = os.path.join(PROJECT_ROOT, "template")

# 配置文件中的版本号不会自动更新，采用硬编码
TSUKIKO_VERSION = "0.3.0"

# 环境变量 -> 配置路径，密钥类配置优先从 .env 读取
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "OBS_PASSWORD": ("scene_control", "password"),
    "VTS_AUTH_TOKEN": ("avatar_control", "auth_token"),
    "TWITCH_OAUTH": ("twitch", "oauth"),
    "TWITCH_USERNAME": ("twitch", "username"),
    "OPENAI_API_KEY": ("generation", "api_key"),
    "OPENAI_BASE_URL": ("generation", "base_url"),
}


class Config(ValidatedConfigBase):
    """总配置类"""

    TSUKIKO_VERSION: str = Field(default=TSUKIKO_VERSION, description="版本号")

    database: DatabaseConfig = Field(default_factory=DatabaseConfig, description="数据库配置")
    bot: BotConfig = Field(default_factory=BotConfig, description="基础配置")
    persona: PersonaConfig = Field(default_factory=PersonaConfig, description="人格配置")
    moderation: ModerationConfig = Field(default_factory=ModerationConfig, description="审核默认策略")
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig, description="限流配置")
    reaction: ReactionConfig = Field(default_factory=ReactionConfig, description="反应流水线配置")
    throttle: ThrottleConfig = Field(default_factory=ThrottleConfig, description="发送节流配置")
    expression: ExpressionConfig = Field(default_factory=ExpressionConfig, description="表情配置")
    highlight: HighlightConfig = Field(default_factory=HighlightConfig, description="高光检测配置")
    scene_control: SceneControlConfig = Field(default_factory=SceneControlConfig, description="场景控制配置")
    avatar_control: AvatarControlConfig = Field(default_factory=AvatarControlConfig, description="形象控制配置")
    twitch: TwitchConfig = Field(default_factory=TwitchConfig, description="Twitch配置")
    generation: GenerationConfig = Field(default_factory=GenerationConfig, description="生成服务配置")
    show_flow: ShowFlowConfig = Field(default_factory=ShowFlowConfig, description="节目流程配置")
    rewards: list[RewardConfig] = Field(default_factory=list, description="奖励兑换映射")
    memory: MemoryConfig = Field(default_factory=MemoryConfig, description="记忆库维护配置")


def ensure_config_file(config_name: str = "bot_config", template_name: str = "bot_config_template") -> str:
    """配置文件不存在时从模板创建，返回配置文件路径"""
    config_path = os.path.join(CONFIG_DIR, f"{config_name}.toml")
    if not os.path.exists(config_path):
        template_path = os.path.join(TEMPLATE_DIR, f"{template_name}.toml")
        logger.info(f"{config_name}.toml配置文件不存在，从模板创建新配置")
        os.makedirs(CONFIG_DIR, exist_ok=True)
        shutil.copy2(template_path, config_path)
        logger.info(f"已创建新{config_name}配置文件: {config_path}")
    return config_path


def _apply_env_overrides(config_dict: dict) -> dict:
    for env_name, path in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        section = config_dict.setdefault(path[0], {})
        section[path[1]] = value
        logger.debug(f"配置项 {'.'.join(path)} 已由环境变量 {env_name} 覆盖")
    return config_dict


def load_config(config_path: str) -> Config:
    """
    加载配置文件
    Args:
        config_path: 配置文件路径
    Returns:
        Config对象
    """
    with open(config_path, encoding="utf-8") as f:
        config_data = tomlkit.load(f)

    # tomlkit 对象先转换为纯 Python 字典，再交给 Pydantic
    config_dict = _apply_env_overrides(config_data.unwrap())
    config_dict.pop("inner", None)
    config_dict.pop("log", None)

    try:
        logger.info("正在解析和验证配置文件...")
        config = Config.from_dict(config_dict)
        logger.info("配置文件解析和验证完成")
        return config
    except Exception as e:
        logger.critical(f"配置文件解析失败: {e}")
        raise


_global_config: Config | None = None


def get_global_config() -> Config:
    """获取全局配置（首次调用时加载）"""
    global _global_config
    if _global_config is None:
        logger.info(f"Tsukiko当前版本: {TSUKIKO_VERSION}")
        _global_config = load_config(ensure_config_file())
    return _global_config
