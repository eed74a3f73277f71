"""
Twitch 聊天 (IRC over websocket)

复用 ConnectionManager 的重连/心跳逻辑，认证阶段发送 PASS/NICK 并等待 001 欢迎消息，
就绪后加入配置的频道。自己发出的消息不会回调给上层。
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from tsukiko.common.exceptions import ConnectionFailedError, IntegrationConfigError
from tsukiko.common.interfaces import ChatEvent, MessageCallback
from tsukiko.common.logger import get_logger
from tsukiko.integrations.connection.manager import ConnectionManager, ReconnectPolicy
from tsukiko.utils.best_effort import fire_and_forget

logger = get_logger("twitch_chat")

PLATFORM = "twitch"


@dataclass(slots=True)
class IrcMessage:
    command: str
    params: list[str] = field(default_factory=list)
    prefix: str | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def nick(self) -> str | None:
        if not self.prefix:
            return None
        return self.prefix.split("!", 1)[0]

    @property
    def trailing(self) -> str:
        return self.params[-1] if self.params else ""


def _unescape_tag(value: str) -> str:
    return (
        value.replace("\\s", " ").replace("\\:", ";").replace("\\r", "\r").replace("\\n", "\n").replace("\\\\", "\\")
    )


def parse_irc_line(line: str) -> IrcMessage | None:
    """解析一行 IRC 消息（支持 IRCv3 tags），格式错误时返回 None"""
    line = line.rstrip("\r\n")
    if not line:
        return None

    tags: dict[str, str] = {}
    if line.startswith("@"):
        raw_tags, _, line = line[1:].partition(" ")
        for item in raw_tags.split(";"):
            key, _, value = item.partition("=")
            tags[key] = _unescape_tag(value)

    prefix = None
    if line.startswith(":"):
        prefix, _, line = line[1:].partition(" ")

    trailing = None
    if " :" in line:
        line, _, trailing = line.partition(" :")
    elif line.startswith(":"):
        trailing, line = line[1:], ""

    parts = line.split()
    if not parts:
        return None
    params = parts[1:]
    if trailing is not None:
        params.append(trailing)
    return IrcMessage(command=parts[0].upper(), params=params, prefix=prefix, tags=tags)


class TwitchChatClient(ConnectionManager):
    """Twitch IRC 聊天客户端，同时实现 ChatTransport"""

    service_name = "Twitch"

    def __init__(self, url: str, username: str, oauth: str, channels: list[str] | None = None, **kwargs):
        if not username or not oauth:
            raise IntegrationConfigError("twitch", "username/oauth")
        super().__init__(url, **kwargs)
        self.username = username.lower()
        self.oauth = oauth if oauth.startswith("oauth:") else f"oauth:{oauth}"
        self.channels = [c.lstrip("#").lower() for c in (channels or []) if c]
        self._callbacks: list[MessageCallback] = []

    @classmethod
    def from_config(cls, config) -> "TwitchChatClient":
        return cls(
            url=config.url,
            username=config.username,
            oauth=config.oauth,
            channels=config.channels,
            policy=ReconnectPolicy.from_config(config.reconnect),
        )

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    # ==================== 连接 ====================

    def _decode(self, raw: str | bytes) -> list[Any]:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        messages = []
        for line in text.split("\r\n"):
            if parsed := parse_irc_line(line):
                messages.append(parsed)
        return messages

    async def _authenticate(self, ws) -> None:
        await ws.send("CAP REQ :twitch.tv/tags twitch.tv/commands")
        await ws.send(f"PASS {self.oauth}")
        await ws.send(f"NICK {self.username}")
        while True:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.request_timeout)
            for message in self._decode(raw):
                if message.command == "001":
                    logger.debug(f"Twitch 登录成功: {self.username}")
                    return
                if message.command == "NOTICE" and "authentication failed" in message.trailing.lower():
                    raise ConnectionFailedError(self.service_name, message.trailing)
                if message.command == "PING":
                    await ws.send(f"PONG :{message.trailing}")

    async def _on_ready(self) -> None:
        for channel in self.channels:
            await self.send_raw(f"JOIN #{channel}")
            logger.info(f"已加入 Twitch 频道 #{channel}")

    async def _heartbeat(self) -> None:
        await self.send_raw("PING :tmi.twitch.tv")

    def _response_id(self, message: Any) -> str | None:
        return None

    def _handle_event(self, message: IrcMessage) -> None:
        match message.command:
            case "PING":
                fire_and_forget(self.send_raw(f"PONG :{message.trailing}"), name="Twitch PONG")
            case "PRIVMSG":
                event = self._to_chat_event(message)
                if event is not None:
                    for callback in self._callbacks:
                        fire_and_forget(callback(event), name=f"Twitch 消息 {event.user}")
            case "RECONNECT":
                logger.info("Twitch 要求重连")
                fire_and_forget(self._close_socket(), name="Twitch RECONNECT")
            case _:
                pass

    async def _close_socket(self):
        if self._ws is not None:
            await self._ws.close()

    def _to_chat_event(self, message: IrcMessage) -> ChatEvent | None:
        if len(message.params) < 2:
            return None
        login = message.nick or ""
        if login.lower() == self.username:
            return None
        return ChatEvent(
            platform=PLATFORM,
            channel=message.params[0].lstrip("#"),
            user=message.tags.get("display-name") or login,
            text=message.trailing,
            user_id=message.tags.get("user-id") or login,
        )

    # ==================== 发送 ====================

    async def send(self, channel: str, text: str) -> None:
        """发送聊天消息，未就绪时为空操作"""
        text = " ".join(text.splitlines())
        if not await self.send_raw(f"PRIVMSG #{channel.lstrip('#')} :{text}"):
            logger.debug(f"Twitch 未就绪，丢弃发往 #{channel} 的消息")
