from typing import Literal

from pydantic import Field

from tsukiko.config.config_base import ValidatedConfigBase

"""
须知：
1. 本文件中记录了所有的配置项
2. 所有配置类必须继承自ValidatedConfigBase进行Pydantic验证
3. 所有新增的class都应在config.py中的Config类中添加字段
4. 运行时可调的项（审核词表、当前人格、表情映射）存放在 settings 表中，每条消息重新读取；
   这里的值只是启动默认值
"""


class DatabaseConfig(ValidatedConfigBase):
    """数据库配置类"""

    database_type: Literal["sqlite"] = Field(default="sqlite", description="数据库类型")
    sqlite_path: str = Field(default="data/tsukiko.db", description="SQLite数据库文件路径")
    connection_timeout: int = Field(default=10, ge=1, description="连接超时时间")


class BotConfig(ValidatedConfigBase):
    """主播伴侣基础配置"""

    nickname: str = Field(default="Tsukiko", description="昵称")
    platform: str = Field(default="twitch", description="默认聊天平台")
    default_channel: str = Field(default="", description="节目流程 say 动作发送到的频道，空则使用第一个已加入的频道")


class PersonaConfig(ValidatedConfigBase):
    """人格配置类"""

    default_persona: str = Field(default="default", description="settings 中未设置 persona.current 时使用的人格")


class ModerationConfig(ValidatedConfigBase):
    """文本审核默认策略（settings 中的 moderation.* 会覆盖）"""

    enabled: bool = Field(default=True, description="是否启用审核")
    blocklist: list[str] = Field(default_factory=list, description="屏蔽词")
    slur_list: list[str] = Field(default_factory=list, description="侮辱性词汇")
    max_caps_percent: int = Field(default=70, ge=0, le=100, description="大写字母占比上限(百分比)")
    max_length: int = Field(default=400, ge=1, description="消息最大长度")
    block_urls: bool = Field(default=False, description="是否拦截链接")


class RateLimitConfig(ValidatedConfigBase):
    """滑动窗口限流配置"""

    window_ms: int = Field(default=10_000, ge=1, description="窗口长度(毫秒)")
    max_in_window: int = Field(default=3, ge=1, description="窗口内允许的最大次数")
    max_keys: int = Field(default=10_000, ge=1, description="最多跟踪的 key 数量，超出时淘汰最久未活跃的")
    sweep_interval: int = Field(default=500, ge=1, description="每处理多少次准入检查清理一次过期 key")


class ReactionConfig(ValidatedConfigBase):
    """反应流水线配置"""

    max_reply_length: int = Field(default=300, ge=1, description="回复最大长度")
    safety_level: str = Field(default="medium", description="传给生成服务的安全级别")
    record_history: bool = Field(default=True, description="是否把收发的消息写入记忆库")


class ThrottleConfig(ValidatedConfigBase):
    """聊天发送节流配置"""

    send_interval: float = Field(default=1.0, ge=0, description="两条消息之间的间隔(秒)")


class ExpressionConfig(ValidatedConfigBase):
    """形象表情配置"""

    reset_delay: float = Field(default=1.2, ge=0, description="表情参数复位延迟(秒)")
    override_weight: float = Field(default=0.9, ge=0, le=1, description="使用自定义参数名时的权重")


class HighlightConfig(ValidatedConfigBase):
    """聊天高峰检测配置"""

    enable: bool = Field(default=True, description="是否启用高光检测")
    window: int = Field(default=30, ge=1, description="滚动窗口大小(秒数样本)")
    threshold: float = Field(default=2.5, gt=0, description="超过中位数多少倍视为高峰")
    create_marker: bool = Field(default=True, description="检测到高峰时是否在录制中打标记")


class ReconnectConfig(ValidatedConfigBase):
    """断线重连退避配置"""

    initial_delay: float = Field(default=1.0, gt=0, description="首次重连延迟(秒)")
    max_delay: float = Field(default=15.0, gt=0, description="最大重连延迟(秒)")
    factor: float = Field(default=2.0, ge=1, description="退避倍数")
    max_attempts: int | None = Field(default=None, description="最大重连次数，None 为无限")


class SceneControlConfig(ValidatedConfigBase):
    """场景控制 (OBS websocket) 配置"""

    enable: bool = Field(default=True, description="是否启用")
    host: str = Field(default="localhost", description="地址")
    port: int = Field(default=4455, ge=1, le=65535, description="端口")
    password: str = Field(default="", description="密码，可由环境变量 OBS_PASSWORD 覆盖")
    heartbeat_interval: float = Field(default=10.0, gt=0, description="心跳间隔(秒)")
    request_timeout: float = Field(default=5.0, gt=0, description="请求超时(秒)")
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig, description="重连策略")


class AvatarControlConfig(ValidatedConfigBase):
    """形象控制 (VTube Studio) 配置"""

    enable: bool = Field(default=True, description="是否启用")
    host: str = Field(default="localhost", description="地址")
    port: int = Field(default=8001, ge=1, le=65535, description="端口")
    plugin_name: str = Field(default="TsukikoAI", description="插件名")
    plugin_author: str = Field(default="Unknown", description="插件作者")
    plugin_icon: str = Field(default="", description="插件图标(base64)")
    auth_token: str = Field(default="", description="认证令牌，可由环境变量 VTS_AUTH_TOKEN 覆盖")
    heartbeat_interval: float = Field(default=10.0, gt=0, description="心跳间隔(秒)")
    request_timeout: float = Field(default=5.0, gt=0, description="请求超时(秒)")
    token_request_timeout: float = Field(default=60.0, gt=0, description="等待主播在 VTS 中允许授权的时间(秒)")
    reconnect: ReconnectConfig = Field(
        default_factory=lambda: ReconnectConfig(initial_delay=2.0), description="重连策略"
    )


class TwitchConfig(ValidatedConfigBase):
    """Twitch 聊天配置"""

    enable: bool = Field(default=False, description="是否启用")
    url: str = Field(default="wss://irc-ws.chat.twitch.tv:443", description="IRC websocket 地址")
    username: str = Field(default="", description="机器人账号")
    oauth: str = Field(default="", description="oauth 令牌，可由环境变量 TWITCH_OAUTH 覆盖")
    channels: list[str] = Field(default_factory=list, description="加入的频道")
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig, description="重连策略")


class GenerationConfig(ValidatedConfigBase):
    """文本生成服务 (OpenAI 兼容接口) 配置"""

    base_url: str = Field(default="https://api.openai.com/v1", description="接口地址")
    api_key: str = Field(default="", description="API Key，可由环境变量 OPENAI_API_KEY 覆盖")
    model: str = Field(default="gpt-4o-mini", description="模型名")
    temperature: float = Field(default=0.8, ge=0, le=2, description="温度")
    max_tokens: int = Field(default=256, ge=1, description="最大生成 token 数")
    timeout: float = Field(default=30.0, gt=0, description="请求超时(秒)")


class ShowActionConfig(ValidatedConfigBase):
    """节目动作"""

    kind: str = Field(..., description="动作类型: scene/hotkey/expression/persona/say")
    value: str = Field(..., description="动作参数")


class ShowStepConfig(ValidatedConfigBase):
    """节目流程中的一步"""

    cron: str = Field(..., description="cron 表达式")
    actions: list[ShowActionConfig] = Field(default_factory=list, description="按顺序执行的动作")


class ShowFlowConfig(ValidatedConfigBase):
    """节目流程配置（settings 中的 showflow.steps 优先）"""

    enable: bool = Field(default=True, description="是否启用")
    steps: list[ShowStepConfig] = Field(default_factory=list, description="步骤列表")


class RewardConfig(ValidatedConfigBase):
    """频道点数兑换 -> 动作映射"""

    title: str = Field(..., description="奖励标题（不区分大小写）")
    kind: str = Field(..., description="动作类型")
    value: str = Field(..., description="动作参数")


class MemoryConfig(ValidatedConfigBase):
    """记忆库维护配置"""

    retention_days: int = Field(default=30, ge=1, description="消息保留天数")
    prune_cron: str = Field(default="0 4 * * *", description="清理过期消息的 cron 表达式")
