"""
连接管理器测试

用本地 websockets 服务模拟 OBS websocket v5 和 VTube Studio，验证握手、请求匹配和退避重连。
"""

import asyncio
import base64
import hashlib

import orjson
import pytest
import websockets
from websockets.exceptions import ConnectionClosed

from tests.helpers import wait_for
from tsukiko.common.exceptions import ConnectionFailedError, RequestTimeoutError
from tsukiko.integrations.connection.avatar_control import AvatarControlManager
from tsukiko.integrations.connection.manager import ConnectionState, ReconnectPolicy
from tsukiko.integrations.connection.scene_control import SceneControlManager, build_auth_string

FAST_POLICY = ReconnectPolicy(initial_delay=0.05, max_delay=0.1)


def dumps(payload: dict) -> str:
    return orjson.dumps(payload).decode()


class FakeServer:
    """本地 websocket 服务基类"""

    def __init__(self):
        self.connections = 0
        self.active: set = set()
        self.port: int | None = None
        self._server = None

    async def start(self, port: int = 0):
        self._server = await websockets.serve(self._handle, "127.0.0.1", port)
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self):
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def drop_clients(self):
        for ws in list(self.active):
            await ws.close()

    async def _handle(self, ws, *args):
        self.connections += 1
        self.active.add(ws)
        try:
            await self.serve(ws)
        except ConnectionClosed:
            pass
        finally:
            self.active.discard(ws)

    async def serve(self, ws):
        raise NotImplementedError


class FakeObsServer(FakeServer):
    def __init__(self, password: str | None = None):
        super().__init__()
        self.password = password
        self.requests: list[tuple[str, dict | None]] = []
        self.failing: set[str] = set()
        self.silent: set[str] = set()

    async def serve(self, ws):
        hello = {"op": 0, "d": {"obsWebSocketVersion": "5.0.0", "rpcVersion": 1}}
        if self.password:
            hello["d"]["authentication"] = {"salt": "salt", "challenge": "challenge"}
        await ws.send(dumps(hello))

        identify = orjson.loads(await ws.recv())
        if self.password and identify["d"].get("authentication") != build_auth_string(
            self.password, "salt", "challenge"
        ):
            await ws.close(4009, "Authentication failed")
            return
        await ws.send(dumps({"op": 2, "d": {"negotiatedRpcVersion": 1}}))

        async for raw in ws:
            request = orjson.loads(raw)["d"]
            request_type = request["requestType"]
            self.requests.append((request_type, request.get("requestData")))
            if request_type in self.silent:
                continue
            ok = request_type not in self.failing
            await ws.send(
                dumps(
                    {
                        "op": 7,
                        "d": {
                            "requestType": request_type,
                            "requestId": request["requestId"],
                            "requestStatus": {"result": ok, "code": 100 if ok else 600},
                        },
                    }
                )
            )

    def request_types(self) -> list[str]:
        return [request_type for request_type, _ in self.requests]


class FakeVtsServer(FakeServer):
    def __init__(self, valid_tokens: set[str] | None = None):
        super().__init__()
        self.valid_tokens = valid_tokens if valid_tokens is not None else {"token-1"}
        self.messages: list[dict] = []
        self.token_delay = 0.0

    async def serve(self, ws):
        async for raw in ws:
            message = orjson.loads(raw)
            self.messages.append(message)
            message_type = message["messageType"]
            response = {
                "apiName": "VTubeStudioPublicAPI",
                "apiVersion": "1.0",
                "requestID": message["requestID"],
                "messageType": message_type.replace("Request", "Response"),
                "data": {},
            }
            if message_type == "AuthenticationTokenRequest":
                # 模拟主播在 VTS 弹窗中点击允许之前的等待
                await asyncio.sleep(self.token_delay)
                response["data"] = {"authenticationToken": "token-1"}
            elif message_type == "AuthenticationRequest":
                authenticated = message["data"]["authenticationToken"] in self.valid_tokens
                response["data"] = {"authenticated": authenticated, "reason": "" if authenticated else "bad token"}
            await ws.send(dumps(response))

    def message_types(self) -> list[str]:
        return [message["messageType"] for message in self.messages]


class MemoryTokenStore:
    def __init__(self, token: str | None = None):
        self.token = token

    async def get_token(self):
        return self.token

    async def save_token(self, token):
        self.token = token

    async def clear_token(self):
        self.token = None


async def unused_port() -> int:
    server = await FakeObsServer().start()
    port = server.port
    await server.stop()
    return port


class TestReconnectPolicy:
    def test_exponential_backoff_with_cap(self):
        policy = ReconnectPolicy(initial_delay=1.0, max_delay=15.0, factor=2.0)
        assert [policy.delay_for(n) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 15.0, 15.0]

    def test_exhausted(self):
        assert ReconnectPolicy().exhausted(1000) is False
        policy = ReconnectPolicy(max_attempts=2)
        assert policy.exhausted(2) is False
        assert policy.exhausted(3) is True


class TestSceneControlManager:
    @pytest.fixture
    async def server(self):
        server = await FakeObsServer().start()
        yield server
        await server.stop()

    @pytest.fixture
    async def manager(self, server):
        manager = SceneControlManager("127.0.0.1", server.port, policy=FAST_POLICY, heartbeat_interval=60)
        yield manager
        await manager.disconnect()

    def test_auth_string(self):
        secret = base64.b64encode(hashlib.sha256(b"pwsalt").digest())
        expected = base64.b64encode(hashlib.sha256(secret + b"challenge").digest()).decode()
        assert build_auth_string("pw", "salt", "challenge") == expected

    @pytest.mark.asyncio
    async def test_connect_and_request(self, server, manager):
        await manager.connect()
        assert manager.state is ConnectionState.READY

        await manager.set_scene("Intro")
        await manager.trigger_hotkey("Clap")
        await manager.create_marker("Highlight 9/s")

        assert server.requests == [
            ("SetCurrentProgramScene", {"sceneName": "Intro"}),
            ("TriggerHotkeyByName", {"hotkeyName": "Clap"}),
            ("CreateRecordMarker", {"markerName": "Highlight 9/s"}),
        ]

    @pytest.mark.asyncio
    async def test_failed_request_does_not_raise(self, server, manager):
        server.failing.add("SetCurrentProgramScene")
        await manager.connect()

        await manager.set_scene("Missing")
        with pytest.raises(RuntimeError):
            await manager._obs_request("SetCurrentProgramScene", {"sceneName": "Missing"})

    @pytest.mark.asyncio
    async def test_request_timeout(self, server):
        server.silent.add("Slow")
        manager = SceneControlManager("127.0.0.1", server.port, request_timeout=0.1, heartbeat_interval=60)
        try:
            await manager.connect()
            with pytest.raises(RequestTimeoutError):
                await manager._obs_request("Slow")
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_calls_before_connect_are_noops(self, server, manager):
        await manager.set_scene("Intro")
        await manager.trigger_hotkey("Clap")
        await manager.create_marker("x")
        assert await manager.request({"op": 6}, "id") is None
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_reconnects_after_server_drop(self, server, manager):
        states = []
        manager.on_state_change(lambda old, new: states.append(new))
        await manager.connect()

        await server.drop_clients()

        assert await wait_for(lambda: server.connections == 2 and manager.is_ready)
        assert ConnectionState.RECONNECTING in states
        assert states[-1] is ConnectionState.READY

        await manager.set_scene("After")
        assert server.requests[-1] == ("SetCurrentProgramScene", {"sceneName": "After"})

    @pytest.mark.asyncio
    async def test_heartbeat(self, server):
        manager = SceneControlManager("127.0.0.1", server.port, heartbeat_interval=0.05)
        try:
            await manager.connect()
            assert await wait_for(lambda: "GetVersion" in server.request_types())
        finally:
            await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect(self, server, manager):
        await manager.connect()
        await manager.disconnect()

        assert manager.state is ConnectionState.DISCONNECTED
        await asyncio.sleep(0.2)
        assert server.connections == 1
        await manager.set_scene("Ignored")
        assert server.requests == []


class TestSceneControlFailures:
    @pytest.mark.asyncio
    async def test_initial_failure_raises_and_keeps_retrying(self):
        port = await unused_port()
        manager = SceneControlManager("127.0.0.1", port, policy=FAST_POLICY, connect_timeout=1)
        server = FakeObsServer()
        try:
            with pytest.raises(ConnectionFailedError):
                await manager.connect()
            assert manager.state is ConnectionState.RECONNECTING

            # 服务端稍后上线，后台重连应自动恢复
            await server.start(port)
            assert await manager.wait_until_ready(timeout=3)
        finally:
            await manager.disconnect()
            await server.stop()

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        port = await unused_port()
        manager = SceneControlManager(
            "127.0.0.1", port, policy=ReconnectPolicy(initial_delay=0.01, max_attempts=2), connect_timeout=1
        )
        with pytest.raises(ConnectionFailedError):
            await manager.connect()
        assert await wait_for(lambda: manager.state is ConnectionState.DISCONNECTED)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_password_authentication(self):
        server = await FakeObsServer(password="secret").start()
        good = SceneControlManager("127.0.0.1", server.port, password="secret", heartbeat_interval=60)
        bad = SceneControlManager("127.0.0.1", server.port, password="wrong", policy=FAST_POLICY)
        missing = SceneControlManager("127.0.0.1", server.port, policy=FAST_POLICY)
        try:
            await good.connect()
            assert good.is_ready
            with pytest.raises(ConnectionFailedError):
                await bad.connect()
            with pytest.raises(ConnectionFailedError):
                await missing.connect()
        finally:
            for manager in (good, bad, missing):
                await manager.disconnect()
            await server.stop()


class TestAvatarControlManager:
    @pytest.mark.asyncio
    async def test_requests_and_stores_new_token(self):
        server = await FakeVtsServer().start()
        tokens = MemoryTokenStore()
        manager = AvatarControlManager("127.0.0.1", server.port, token_store=tokens, heartbeat_interval=60)
        try:
            await manager.connect()
            assert manager.is_ready
            assert tokens.token == "token-1"
            assert server.message_types() == ["AuthenticationTokenRequest", "AuthenticationRequest"]

            await manager.set_parameter("Smile", 0.9)
            inject = server.messages[-1]
            assert inject["messageType"] == "InjectParameterDataRequest"
            assert inject["data"] == {
                "faceFound": False,
                "mode": "set",
                "parameterValues": [{"id": "Smile", "value": 0.9}],
            }

            await manager.set_expression("Angry", 0.5)
            assert server.messages[-1]["data"]["parameterValues"] == [{"id": "Angry", "value": 0.5}]
        finally:
            await manager.disconnect()
            await server.stop()

    @pytest.mark.asyncio
    async def test_token_request_waits_for_approval(self):
        server = await FakeVtsServer().start()
        server.token_delay = 0.3
        tokens = MemoryTokenStore()
        manager = AvatarControlManager(
            "127.0.0.1",
            server.port,
            token_store=tokens,
            request_timeout=0.1,
            token_request_timeout=2.0,
            heartbeat_interval=60,
        )
        try:
            await manager.connect()
            assert manager.is_ready
            assert tokens.token == "token-1"
            assert server.message_types() == ["AuthenticationTokenRequest", "AuthenticationRequest"]
        finally:
            await manager.disconnect()
            await server.stop()

    @pytest.mark.asyncio
    async def test_stored_token_is_reused(self):
        server = await FakeVtsServer().start()
        manager = AvatarControlManager(
            "127.0.0.1", server.port, token_store=MemoryTokenStore("token-1"), heartbeat_interval=60
        )
        try:
            await manager.connect()
            assert server.message_types() == ["AuthenticationRequest"]
        finally:
            await manager.disconnect()
            await server.stop()

    @pytest.mark.asyncio
    async def test_rejected_token_is_cleared_and_renewed(self):
        server = await FakeVtsServer().start()
        tokens = MemoryTokenStore("stale")
        manager = AvatarControlManager(
            "127.0.0.1", server.port, token_store=tokens, policy=FAST_POLICY, heartbeat_interval=60
        )
        try:
            with pytest.raises(ConnectionFailedError):
                await manager.connect()
            assert await manager.wait_until_ready(timeout=3)
            assert tokens.token == "token-1"
        finally:
            await manager.disconnect()
            await server.stop()

    @pytest.mark.asyncio
    async def test_set_parameter_when_not_ready(self):
        manager = AvatarControlManager("127.0.0.1", 1)
        await manager.set_parameter("Smile", 0.9)
        assert manager.state is ConnectionState.DISCONNECTED
