"""
连接管理器基类

每个外部 socket 服务（场景控制、形象控制、聊天平台）各持有一个管理器，
负责建立连接、认证、心跳以及断线后的退避重连。

状态机:
    DISCONNECTED -connect()-> CONNECTING -open-> AUTHENTICATING -ack-> READY
    READY -close/error-> RECONNECTING -backoff-> CONNECTING
    任意状态 -disconnect()-> DISCONNECTED

多步状态切换在 self._lock 内完成，每个管理器同一时刻最多只有一个重连任务。
未就绪时的外部调用都是空操作，不会抛出异常。
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import orjson
import websockets
from websockets.exceptions import ConnectionClosed

from tsukiko.common.exceptions import ConnectionFailedError, RequestTimeoutError
from tsukiko.common.logger import get_logger

logger = get_logger("connection")


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    RECONNECTING = "reconnecting"


StateListener = Callable[[ConnectionState, ConnectionState], None]


@dataclass(frozen=True, slots=True)
class ReconnectPolicy:
    """指数退避重连策略，max_attempts 为 None 时无限重试"""

    initial_delay: float = 1.0
    max_delay: float = 15.0
    factor: float = 2.0
    max_attempts: int | None = None

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次重连（从 1 开始）前的等待时间"""
        return min(self.max_delay, self.initial_delay * self.factor ** max(0, attempt - 1))

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts is not None and attempt > self.max_attempts

    @classmethod
    def from_config(cls, config) -> "ReconnectPolicy":
        return cls(
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            factor=config.factor,
            max_attempts=config.max_attempts,
        )


class ConnectionManager(ABC):
    """websocket 连接管理器基类

    子类需要实现:
        _authenticate(ws): 在连接打开后完成握手/认证，失败时抛出异常
        _heartbeat(): 就绪期间定期调用的心跳请求
        _response_id(message): 从入站消息中取出请求 id，用于匹配等待中的请求
    """

    service_name: str = "service"

    def __init__(
        self,
        url: str,
        *,
        policy: ReconnectPolicy | None = None,
        heartbeat_interval: float = 10.0,
        request_timeout: float = 5.0,
        connect_timeout: float = 10.0,
    ):
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self.heartbeat_interval = heartbeat_interval
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout

        self._state = ConnectionState.DISCONNECTED
        self._ready_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self._listeners: list[StateListener] = []

        self._ws: Any = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._pending: dict[str, asyncio.Future] = {}
        self._stopping = False

    # ==================== 状态 ====================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    def on_state_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _set_state(self, new_state: ConnectionState):
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        if new_state is ConnectionState.READY:
            self._ready_event.set()
        else:
            self._ready_event.clear()
        logger.debug(f"{self.service_name} 状态: {old_state.value} -> {new_state.value}")
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.warning(f"{self.service_name} 状态监听器出错: {e}")

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    # ==================== 连接生命周期 ====================

    async def connect(self) -> None:
        """建立连接并完成认证

        Raises:
            ConnectionFailedError: 首次连接失败；此时后台重连已经开始
        """
        async with self._lock:
            self._stopping = False
            if self._state is ConnectionState.READY:
                return
            if self._reconnect_task is not None and not self._reconnect_task.done():
                logger.debug(f"{self.service_name} 正在重连中，忽略 connect()")
                return
            try:
                await self._open_session()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await self._teardown()
                self._set_state(ConnectionState.RECONNECTING)
                self._schedule_reconnect()
                raise ConnectionFailedError(self.service_name, str(e) or type(e).__name__) from e
        logger.info(f"✅ {self.service_name} 已连接: {self.url}")

    async def disconnect(self) -> None:
        """断开连接并停止重连、心跳和读取任务"""
        self._stopping = True
        await self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        async with self._lock:
            await self._teardown()
            self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"{self.service_name} 已断开")

    async def _open_session(self):
        self._set_state(ConnectionState.CONNECTING)
        ws = await websockets.connect(self.url, open_timeout=self.connect_timeout, **self._connect_kwargs())
        self._ws = ws

        self._set_state(ConnectionState.AUTHENTICATING)
        await self._authenticate(ws)

        self._reader_task = asyncio.create_task(self._reader_loop(ws), name=f"{self.service_name}-reader")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name=f"{self.service_name}-heartbeat")
        self._set_state(ConnectionState.READY)
        await self._on_ready()

    async def _teardown(self):
        """关闭当前会话的 socket 和附属任务，不修改状态"""
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reader_task):
            if task is not current:
                await self._cancel_task(task)
        self._heartbeat_task = None
        self._reader_task = None

        self._fail_pending(ConnectionFailedError(self.service_name, "连接已断开"))

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"关闭 {self.service_name} socket 时出错: {e}")

    @staticmethod
    async def _cancel_task(task: asyncio.Task | None):
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _fail_pending(self, exc: Exception):
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    # ==================== 重连 ====================

    def _schedule_reconnect(self):
        if self._stopping:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop(), name=f"{self.service_name}-reconnect")

    def _handle_connection_lost(self, reason: str):
        if self._stopping:
            return
        logger.warning(f"⚠️ {self.service_name} 连接中断: {reason}")
        self._fail_pending(ConnectionFailedError(self.service_name, reason))
        self._set_state(ConnectionState.RECONNECTING)
        self._schedule_reconnect()

    async def _reconnect_loop(self):
        async with self._lock:
            await self._teardown()
            if self._stopping:
                return
            self._set_state(ConnectionState.RECONNECTING)

        attempt = 0
        while not self._stopping:
            attempt += 1
            if self.policy.exhausted(attempt):
                logger.error(f"❌ {self.service_name} 已达到最大重连次数 {self.policy.max_attempts}，停止重连")
                async with self._lock:
                    self._set_state(ConnectionState.DISCONNECTED)
                return

            delay = self.policy.delay_for(attempt)
            logger.info(f"{self.service_name} 将在 {delay:.1f} 秒后进行第 {attempt} 次重连")
            await asyncio.sleep(delay)

            async with self._lock:
                if self._stopping:
                    return
                try:
                    await self._open_session()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(f"{self.service_name} 第 {attempt} 次重连失败: {e}")
                    await self._teardown()
                    self._set_state(ConnectionState.RECONNECTING)
                    continue
            logger.info(f"✅ {self.service_name} 重连成功 (第 {attempt} 次)")
            return

    # ==================== 读取与心跳 ====================

    async def _reader_loop(self, ws):
        reason = "连接被关闭"
        try:
            async for raw in ws:
                for message in self._decode(raw):
                    self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as e:
            reason = f"连接被关闭 ({e.rcvd.code if e.rcvd else 'no close frame'})"
        except Exception as e:
            reason = f"读取出错: {e}"
        if ws is self._ws:
            self._handle_connection_lost(reason)

    def _decode(self, raw: str | bytes) -> list[Any]:
        try:
            return [orjson.loads(raw)]
        except orjson.JSONDecodeError:
            logger.debug(f"{self.service_name} 收到无法解析的消息: {str(raw)[:100]}")
            return []

    def _dispatch(self, message: Any):
        request_id = self._response_id(message)
        if request_id is not None:
            future = self._pending.pop(request_id, None)
            if future is not None:
                if not future.done():
                    future.set_result(message)
                return
        self._handle_event(message)

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.is_ready:
                continue
            try:
                await self._heartbeat()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # 心跳失败只记录，断线由读取任务发现
                logger.debug(f"{self.service_name} 心跳失败: {e}")

    # ==================== 请求 ====================

    @staticmethod
    def new_request_id() -> str:
        return uuid.uuid4().hex

    async def send_raw(self, data: str) -> bool:
        """就绪时发送一条原始消息，未就绪时返回 False"""
        if not self.is_ready or self._ws is None:
            return False
        await self._ws.send(data)
        return True

    async def request(self, payload: dict, request_id: str) -> Any | None:
        """发送请求并等待对应响应，未就绪时直接返回 None

        Raises:
            RequestTimeoutError: 超时未收到响应
            ConnectionFailedError: 等待期间连接断开
        """
        if not self.is_ready or self._ws is None:
            logger.debug(f"{self.service_name} 未就绪，忽略请求 {request_id}")
            return None
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(orjson.dumps(payload).decode())
            return await asyncio.wait_for(future, timeout=self.request_timeout)
        except TimeoutError as e:
            raise RequestTimeoutError(f"{self.service_name} 请求 {request_id} 超时") from e
        finally:
            self._pending.pop(request_id, None)

    async def call_safely(self, payload: dict, request_id: str, description: str) -> Any | None:
        """对外调用的统一入口：任何失败都只记录日志，返回 None"""
        try:
            return await self.request(payload, request_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"{self.service_name} {description} 失败: {e}")
            return None

    async def _handshake_recv(self, ws, timeout: float | None = None) -> Any:
        """认证阶段直接从 socket 读取一条 JSON 消息"""
        raw = await asyncio.wait_for(ws.recv(), timeout=timeout or self.request_timeout)
        return orjson.loads(raw)

    @staticmethod
    async def _handshake_send(ws, payload: dict):
        await ws.send(orjson.dumps(payload).decode())

    async def _handshake_request(self, ws, payload: dict, request_id: str, timeout: float | None = None) -> Any:
        """认证阶段发送请求并读取到 id 匹配的响应为止"""
        await self._handshake_send(ws, payload)
        while True:
            message = await self._handshake_recv(ws, timeout)
            if self._response_id(message) == request_id:
                return message

    # ==================== 子类扩展点 ====================

    def _connect_kwargs(self) -> dict[str, Any]:
        return {"max_size": 2**24}

    @abstractmethod
    async def _authenticate(self, ws) -> None: ...

    @abstractmethod
    async def _heartbeat(self) -> None: ...

    @abstractmethod
    def _response_id(self, message: Any) -> str | None: ...

    def _handle_event(self, message: Any) -> None:
        """没有匹配到等待中请求的入站消息"""

    async def _on_ready(self) -> None:
        """进入 READY 之后调用（如加入频道）"""
