import asyncio
import signal
import time
from collections.abc import Awaitable, Callable

from rich.traceback import install

from tsukiko import BaseMain
from tsukiko.analytics.highlights import HighlightDetector, HighlightService, HighlightStore
from tsukiko.chat.message_send.throttler import MessageThrottler
from tsukiko.chat.moderation.engine import policy_from_config
from tsukiko.chat.rate_limit.limiter import SlidingWindowLimiter
from tsukiko.chat.reaction.actions import ActionExecutor, RewardRouter
from tsukiko.chat.reaction.pipeline import ReactionOptions, ReactionPipeline
from tsukiko.common.database import close_engine, get_engine
from tsukiko.common.exceptions import ConnectionFailedError, IntegrationConfigError, InvalidShowStepError
from tsukiko.common.interfaces import ChatEvent, RewardSource
from tsukiko.common.logger import get_logger
from tsukiko.common.memory_store import MemoryStore, SettingsTokenStore
from tsukiko.config.config import Config, get_global_config
from tsukiko.integrations.connection.avatar_control import AvatarControlManager
from tsukiko.integrations.connection.manager import ConnectionManager
from tsukiko.integrations.connection.scene_control import SceneControlManager
from tsukiko.integrations.twitch_chat import TwitchChatClient
from tsukiko.llm_models.generation_client import GenerationClient
from tsukiko.schedule.show_flow import (
    SHOWFLOW_SETTING_KEY,
    ShowFlowScheduler,
    start_cron_task,
    steps_from_config,
    steps_from_settings,
)
from tsukiko.utils.best_effort import drain_background_tasks, run_best_effort

install(extra_lines=3)

logger = get_logger("main")

ShutdownStep = tuple[str, Callable[[], Awaitable[object]]]


class MainSystem(BaseMain):
    """主系统类，负责组装和协调所有组件"""

    def __init__(self, config: Config | None = None, store: MemoryStore | None = None) -> None:
        super().__init__()
        self.config = config or get_global_config()
        self.store = store or MemoryStore()

        self.scene: SceneControlManager | None = None
        self.avatar: AvatarControlManager | None = None
        self.chat: TwitchChatClient | None = None
        self.generator: GenerationClient | None = None
        self.pipeline: ReactionPipeline | None = None
        self.highlights: HighlightService | None = None

        self.throttler = MessageThrottler(self._send_chat, delay=self.config.throttle.send_interval)
        self.limiter = SlidingWindowLimiter(
            window_ms=self.config.rate_limit.window_ms,
            max_in_window=self.config.rate_limit.max_in_window,
            max_keys=self.config.rate_limit.max_keys,
            sweep_interval=self.config.rate_limit.sweep_interval,
        )
        self.show_flow = ShowFlowScheduler()
        self.executor: ActionExecutor | None = None
        self.reward_router: RewardRouter | None = None

        # 按启动顺序记录关闭步骤，关闭时倒序执行
        self._shutdown_steps: list[ShutdownStep] = []
        self._maintenance_tasks: list[asyncio.Task] = []
        self._stop_event: asyncio.Event | None = None
        self._shutting_down = False

    # ==================== 组装 ====================

    def _build_components(self) -> None:
        config = self.config

        if config.scene_control.enable:
            self.scene = SceneControlManager.from_config(config.scene_control)
        if config.avatar_control.enable:
            self.avatar = AvatarControlManager.from_config(config.avatar_control, SettingsTokenStore(self.store))
        if config.twitch.enable:
            try:
                self.chat = TwitchChatClient.from_config(config.twitch)
            except IntegrationConfigError as e:
                logger.warning(f"⚠️ {e}，Twitch 聊天已跳过")
        try:
            self.generator = GenerationClient.from_config(config.generation)
        except IntegrationConfigError as e:
            logger.warning(f"⚠️ {e}，自动回复已关闭")

        self.executor = ActionExecutor(
            scene=self.scene,
            avatar=self.avatar,
            settings=self.store,
            throttler=self.throttler,
            default_channel=self._default_channel,
            expression_weight=config.expression.override_weight,
            expression_reset_delay=config.expression.reset_delay,
        )
        self.reward_router = RewardRouter.from_config(self.executor, config.rewards)

        if self.generator is not None:
            self.pipeline = ReactionPipeline(
                settings=self.store,
                limiter=self.limiter,
                generator=self.generator,
                throttler=self.throttler,
                avatar=self.avatar,
                store=self.store,
                base_policy=policy_from_config(config.moderation),
                options=ReactionOptions.from_config(config),
            )

        if config.highlight.enable:
            self.highlights = HighlightService(
                HighlightDetector(config.highlight.window, config.highlight.threshold),
                HighlightStore(self.store),
                scene=self.scene,
                create_marker=config.highlight.create_marker,
            )

        if self.chat is not None:
            self.chat.on_message(self._on_chat_message)

    def _default_channel(self) -> str | None:
        if self.config.bot.default_channel:
            return self.config.bot.default_channel
        if self.chat is not None and self.chat.channels:
            return self.chat.channels[0]
        return None

    # ==================== 消息处理 ====================

    async def _send_chat(self, channel: str, text: str) -> None:
        if self.chat is None:
            logger.debug(f"没有可用的聊天平台，丢弃发往 {channel} 的消息")
            return
        await self.chat.send(channel, text)

    async def _on_chat_message(self, event: ChatEvent) -> None:
        if self._shutting_down:
            return
        if self.highlights is not None:
            await run_best_effort(self.highlights.on_chat_message(), name="高光检测")
        if self.pipeline is not None:
            outcome = await self.pipeline.handle_chat(event)
            logger.debug(f"{event.user} 的消息处理结果: {outcome.value}")

    def attach_reward_source(self, source: RewardSource) -> None:
        if self.reward_router is not None:
            self.reward_router.attach(source)

    async def reload_show_flow(self) -> bool:
        """重新从 settings（优先）或配置文件加载节目流程，失败时保留旧流程

        启动时调用一次。直接改写 showflow.steps 的调用方需要再调用本方法，
        或者改用 set_show_flow() 同时完成写入和重新加载。
        """
        if not self.config.show_flow.enable or self.executor is None:
            return False
        try:
            settings = await self.store.get_all_settings()
            steps = steps_from_settings(settings)
            if steps is None:
                steps = steps_from_config(self.config.show_flow.steps)
            await self.show_flow.load(steps, self.executor.execute)
            return True
        except InvalidShowStepError as e:
            logger.warning(f"⚠️ 节目流程无效，保留当前流程: {e}")
            return False

    async def set_show_flow(self, raw_steps: str) -> bool:
        """校验并写入 showflow.steps，然后立即重新加载；内容无效时不写入"""
        try:
            steps_from_settings({SHOWFLOW_SETTING_KEY: raw_steps})
        except InvalidShowStepError as e:
            logger.warning(f"⚠️ 拒绝写入无效的节目流程: {e}")
            return False
        await self.store.set_setting(SHOWFLOW_SETTING_KEY, raw_steps)
        return await self.reload_show_flow()

    # ==================== 生命周期 ====================

    async def _connect_integration(self, manager: ConnectionManager) -> None:
        """连接失败不影响启动，后台会继续重连"""
        self._shutdown_steps.append((manager.service_name, manager.disconnect))
        try:
            await manager.connect()
        except ConnectionFailedError as e:
            logger.warning(f"⚠️ {e}，将在后台继续重连")

    async def initialize(self) -> None:
        """初始化系统组件"""
        init_start_time = time.time()
        logger.info(f"正在唤醒{self.config.bot.nickname}......")

        await get_engine()
        self._shutdown_steps.append(("数据库", close_engine))

        self._build_components()
        self._shutdown_steps.append(("后台任务", drain_background_tasks))
        if self.generator is not None:
            self._shutdown_steps.append(("生成服务", self.generator.close))

        for manager in (self.scene, self.avatar, self.chat):
            if manager is not None:
                await self._connect_integration(manager)

        self._shutdown_steps.append(("发送队列", self.throttler.close))

        await self.reload_show_flow()
        self._shutdown_steps.append(("节目流程", self.show_flow.stop))

        retention_days = self.config.memory.retention_days
        self._maintenance_tasks.append(
            start_cron_task(
                self.config.memory.prune_cron,
                lambda: self.store.prune_old_messages(retention_days),
                name="memory-prune",
            )
        )
        self._shutdown_steps.append(("记忆清理任务", self._stop_maintenance))

        init_time = int(1000 * (time.time() - init_start_time))
        logger.info(f"全部系统初始化完成，{self.config.bot.nickname}已上线，耗时 {init_time}ms")

    async def _stop_maintenance(self) -> None:
        tasks, self._maintenance_tasks = self._maintenance_tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        """按启动的相反顺序关闭组件"""
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("开始系统清理流程...")

        while self._shutdown_steps:
            name, stop = self._shutdown_steps.pop()
            try:
                await asyncio.wait_for(stop(), timeout=15.0)
                logger.info(f"🛑 {name} 已停止")
            except TimeoutError:
                logger.error(f"停止 {name} 超时")
            except Exception as e:
                logger.error(f"停止 {name} 时出错: {e}")

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                # Windows 下由 KeyboardInterrupt 处理
                logger.debug(f"无法注册信号处理器: {sig}")

    async def run(self) -> None:
        """初始化并运行直到收到退出信号"""
        self._stop_event = asyncio.Event()
        self._setup_signal_handlers()
        try:
            await self.initialize()
            await self._stop_event.wait()
            logger.info("收到退出信号，正在优雅关闭系统...")
        finally:
            await self.shutdown()
