"""
形象控制 (VTube Studio Public API)

认证流程:
1. 没有令牌时发送 AuthenticationTokenRequest（需要在 VTS 中点击允许），拿到令牌后持久化
2. 用令牌发送 AuthenticationRequest
3. 令牌被拒绝时清除，下次重连重新申请
"""

from typing import Any

from tsukiko.common.exceptions import ConnectionFailedError
from tsukiko.common.interfaces import TokenStore
from tsukiko.common.logger import get_logger

from .manager import ConnectionManager, ReconnectPolicy

logger = get_logger("avatar_control")

API_NAME = "VTubeStudioPublicAPI"
API_VERSION = "1.0"


class AvatarControlManager(ConnectionManager):
    """VTube Studio 形象控制连接"""

    service_name = "形象控制"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8001,
        *,
        plugin_name: str = "TsukikoAI",
        plugin_author: str = "Unknown",
        plugin_icon: str = "",
        auth_token: str = "",
        token_store: TokenStore | None = None,
        token_request_timeout: float = 60.0,
        **kwargs,
    ):
        super().__init__(f"ws://{host}:{port}", **kwargs)
        self.plugin_name = plugin_name
        self.plugin_author = plugin_author
        self.plugin_icon = plugin_icon
        self._token: str | None = auth_token or None
        self._token_store = token_store
        # 令牌申请要等主播在 VTS 弹窗里点允许
        self.token_request_timeout = token_request_timeout

    @classmethod
    def from_config(cls, config, token_store: TokenStore | None = None) -> "AvatarControlManager":
        return cls(
            host=config.host,
            port=config.port,
            plugin_name=config.plugin_name,
            plugin_author=config.plugin_author,
            plugin_icon=config.plugin_icon,
            auth_token=config.auth_token,
            token_store=token_store,
            policy=ReconnectPolicy.from_config(config.reconnect),
            heartbeat_interval=config.heartbeat_interval,
            request_timeout=config.request_timeout,
            token_request_timeout=config.token_request_timeout,
        )

    def _envelope(self, message_type: str, data: dict | None = None) -> tuple[dict, str]:
        request_id = self.new_request_id()
        payload: dict[str, Any] = {
            "apiName": API_NAME,
            "apiVersion": API_VERSION,
            "requestID": request_id,
            "messageType": message_type,
        }
        if data is not None:
            payload["data"] = data
        return payload, request_id

    def _plugin_info(self) -> dict[str, str]:
        info = {"pluginName": self.plugin_name, "pluginDeveloper": self.plugin_author}
        if self.plugin_icon:
            info["pluginIcon"] = self.plugin_icon
        return info

    # ==================== 认证 ====================

    async def _load_token(self) -> str | None:
        if self._token:
            return self._token
        if self._token_store is not None:
            self._token = await self._token_store.get_token()
        return self._token

    async def _request_new_token(self, ws) -> str:
        logger.info("正在向 VTube Studio 申请认证令牌，请在 VTS 中点击允许")
        payload, request_id = self._envelope("AuthenticationTokenRequest", self._plugin_info())
        response = await self._handshake_request(ws, payload, request_id, timeout=self.token_request_timeout)
        token = response.get("data", {}).get("authenticationToken")
        if response.get("messageType") != "AuthenticationTokenResponse" or not token:
            reason = response.get("data", {}).get("message", "未返回令牌")
            raise ConnectionFailedError(self.service_name, f"申请令牌失败: {reason}")
        self._token = token
        if self._token_store is not None:
            await self._token_store.save_token(token)
        return token

    async def _authenticate(self, ws) -> None:
        token = await self._load_token()
        if not token:
            token = await self._request_new_token(ws)

        payload, request_id = self._envelope("AuthenticationRequest", {**self._plugin_info(), "authenticationToken": token})
        response = await self._handshake_request(ws, payload, request_id)
        data = response.get("data", {})
        if response.get("messageType") == "AuthenticationResponse" and data.get("authenticated"):
            logger.debug("形象控制认证成功")
            return

        # 令牌失效：清除，下次重连时重新申请
        self._token = None
        if self._token_store is not None:
            await self._token_store.clear_token()
        raise ConnectionFailedError(self.service_name, f"认证被拒绝: {data.get('reason') or data.get('message') or '未知原因'}")

    def _response_id(self, message: Any) -> str | None:
        if isinstance(message, dict):
            return message.get("requestID")
        return None

    async def _heartbeat(self) -> None:
        payload, request_id = self._envelope("APIStateRequest")
        await self.request(payload, request_id)

    # ==================== 对外接口 ====================

    async def set_parameter(self, name: str, weight: float) -> None:
        """注入参数值，未就绪时为空操作"""
        if not self.is_ready:
            logger.debug(f"形象控制未就绪，忽略参数 {name}={weight}")
            return
        payload, request_id = self._envelope(
            "InjectParameterDataRequest",
            {"faceFound": False, "mode": "set", "parameterValues": [{"id": name, "value": weight}]},
        )
        await self.call_safely(payload, request_id, f"设置参数 {name}")

    async def set_expression(self, name: str, weight: float) -> None:
        await self.set_parameter(name, weight)
