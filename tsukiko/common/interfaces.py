"""核心依赖的外部能力接口

核心只通过这些协议调用聊天平台、生成服务、场景/形象控制和设置存储，
测试可以直接替换成假实现。
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class ChatEvent:
    """一条入站聊天消息（平台已过滤掉自己发出的回显）"""

    platform: str
    channel: str
    user: str
    text: str
    user_id: str | None = None


MessageCallback = Callable[[ChatEvent], Awaitable[None]]


@runtime_checkable
class ChatTransport(Protocol):
    def on_message(self, callback: MessageCallback) -> None: ...

    async def send(self, channel: str, text: str) -> None: ...


@runtime_checkable
class GenerationService(Protocol):
    async def chat(self, prompt: str, system_prompt: str | None = None, safety_level: str | None = None) -> str: ...


@runtime_checkable
class SceneControl(Protocol):
    """场景控制服务，未连接时所有调用都是空操作"""

    async def set_scene(self, name: str) -> None: ...

    async def trigger_hotkey(self, name: str) -> None: ...

    async def create_marker(self, label: str) -> None: ...


@runtime_checkable
class AvatarControl(Protocol):
    """形象控制服务，未连接时所有调用都是空操作"""

    async def set_parameter(self, name: str, weight: float) -> None: ...


@runtime_checkable
class TokenStore(Protocol):
    """形象控制认证令牌的持久化存储，需要跨进程重启保留"""

    async def get_token(self) -> str | None: ...

    async def save_token(self, token: str) -> None: ...

    async def clear_token(self) -> None: ...


@runtime_checkable
class SettingsAccessor(Protocol):
    """设置读取接口，每次读取都是最新值，不做缓存"""

    async def get_all_settings(self) -> dict[str, str]: ...

    async def set_setting(self, key: str, value: str) -> None: ...


RewardCallback = Callable[[str], Awaitable[None]]


@runtime_checkable
class RewardSource(Protocol):
    """频道点数兑换事件来源，回调参数为奖励标题"""

    def on_reward(self, callback: RewardCallback) -> None: ...
