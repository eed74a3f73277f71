"""
场景控制 (OBS websocket v5)

握手: Hello(op 0) -> Identify(op 1) -> Identified(op 2)
请求: Request(op 6) / RequestResponse(op 7)，以 requestId 匹配
"""

import base64
import hashlib
from typing import Any

from tsukiko.common.exceptions import ConnectionFailedError
from tsukiko.common.logger import get_logger

from .manager import ConnectionManager, ReconnectPolicy

logger = get_logger("scene_control")

OP_HELLO = 0
OP_IDENTIFY = 1
OP_IDENTIFIED = 2
OP_REQUEST = 6
OP_REQUEST_RESPONSE = 7

RPC_VERSION = 1


def build_auth_string(password: str, salt: str, challenge: str) -> str:
    """base64(sha256(base64(sha256(password + salt)) + challenge))"""
    secret = base64.b64encode(hashlib.sha256((password + salt).encode()).digest()).decode()
    return base64.b64encode(hashlib.sha256((secret + challenge).encode()).digest()).decode()


class SceneControlManager(ConnectionManager):
    """OBS 场景控制连接"""

    service_name = "场景控制"

    def __init__(self, host: str = "localhost", port: int = 4455, password: str = "", **kwargs):
        super().__init__(f"ws://{host}:{port}", **kwargs)
        self.password = password

    @classmethod
    def from_config(cls, config) -> "SceneControlManager":
        return cls(
            host=config.host,
            port=config.port,
            password=config.password,
            policy=ReconnectPolicy.from_config(config.reconnect),
            heartbeat_interval=config.heartbeat_interval,
            request_timeout=config.request_timeout,
        )

    async def _authenticate(self, ws) -> None:
        hello = await self._handshake_recv(ws)
        if hello.get("op") != OP_HELLO:
            raise ConnectionFailedError(self.service_name, f"期望 Hello，收到 op={hello.get('op')}")

        identify: dict[str, Any] = {"rpcVersion": RPC_VERSION, "eventSubscriptions": 0}
        auth = hello.get("d", {}).get("authentication")
        if auth:
            if not self.password:
                raise ConnectionFailedError(self.service_name, "服务端要求密码，但未配置 OBS_PASSWORD")
            identify["authentication"] = build_auth_string(self.password, auth["salt"], auth["challenge"])

        await self._handshake_send(ws, {"op": OP_IDENTIFY, "d": identify})
        identified = await self._handshake_recv(ws)
        if identified.get("op") != OP_IDENTIFIED:
            raise ConnectionFailedError(self.service_name, f"认证失败，收到 op={identified.get('op')}")
        logger.debug(f"场景控制握手完成，RPC 版本 {identified.get('d', {}).get('negotiatedRpcVersion')}")

    def _response_id(self, message: Any) -> str | None:
        if isinstance(message, dict) and message.get("op") == OP_REQUEST_RESPONSE:
            return message.get("d", {}).get("requestId")
        return None

    async def _heartbeat(self) -> None:
        await self._obs_request("GetVersion")

    async def _obs_request(self, request_type: str, request_data: dict | None = None) -> dict | None:
        """发送 OBS 请求，返回 d 字段；请求失败(result=false)时抛出 RuntimeError"""
        request_id = self.new_request_id()
        payload: dict[str, Any] = {"op": OP_REQUEST, "d": {"requestType": request_type, "requestId": request_id}}
        if request_data is not None:
            payload["d"]["requestData"] = request_data
        response = await self.request(payload, request_id)
        if response is None:
            return None
        data = response.get("d", {})
        status = data.get("requestStatus", {})
        if not status.get("result", False):
            raise RuntimeError(f"{request_type} 失败: code={status.get('code')} {status.get('comment') or ''}".strip())
        return data

    async def _safe_obs_request(self, request_type: str, request_data: dict | None = None) -> None:
        if not self.is_ready:
            logger.debug(f"场景控制未就绪，忽略 {request_type}")
            return
        try:
            await self._obs_request(request_type, request_data)
        except Exception as e:
            logger.warning(f"场景控制 {request_type} 失败: {e}")

    # ==================== 对外接口 ====================

    async def set_scene(self, name: str) -> None:
        logger.info(f"切换场景: {name}")
        await self._safe_obs_request("SetCurrentProgramScene", {"sceneName": name})

    async def trigger_hotkey(self, name: str) -> None:
        logger.info(f"触发热键: {name}")
        await self._safe_obs_request("TriggerHotkeyByName", {"hotkeyName": name})

    async def create_marker(self, label: str) -> None:
        """录制标记，旧版本 OBS 不支持时静默忽略"""
        if not self.is_ready:
            return
        try:
            await self._obs_request("CreateRecordMarker", {"markerName": label})
        except Exception as e:
            logger.debug(f"创建录制标记失败(已忽略): {e}")
