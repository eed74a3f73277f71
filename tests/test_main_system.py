"""
主系统组装测试（不连接任何外部服务）
"""

import orjson
import pytest

from tests.helpers import FakeGenerator
from tsukiko.chat.reaction.actions import Action, ActionKind
from tsukiko.common.interfaces import ChatEvent
from tsukiko.config.config import Config
from tsukiko.main import MainSystem
from tsukiko.schedule.show_flow import ShowStep


def make_config(**overrides) -> Config:
    data = {
        "scene_control": {"enable": False},
        "avatar_control": {"enable": False},
        "twitch": {"enable": False},
        "highlight": {"enable": True, "window": 3, "threshold": 2.0},
        "show_flow": {"steps": [{"cron": "0 20 * * *", "actions": [{"kind": "scene", "value": "Live"}]}]},
        "rewards": [{"title": "Evil Mode", "kind": "persona", "value": "evil"}],
    }
    data.update(overrides)
    return Config.from_dict(data)


class TestMainSystem:
    @pytest.fixture
    async def system(self, memory_store):
        system = MainSystem(make_config(), store=memory_store)
        system._build_components()
        yield system
        await system.show_flow.stop()
        await system.throttler.close()

    def test_components_without_credentials(self, system):
        assert system.scene is None
        assert system.avatar is None
        assert system.chat is None
        assert system.generator is None
        assert system.pipeline is None
        assert system.highlights is not None
        assert system._default_channel() is None

    @pytest.mark.asyncio
    async def test_reward_switches_persona(self, system, memory_store):
        assert await system.reward_router.on_reward("EVIL MODE") is True
        assert await memory_store.get_setting("persona.current") == "evil"

    @pytest.mark.asyncio
    async def test_attached_reward_source(self, system, memory_store):
        class Source:
            callback = None

            def on_reward(self, callback):
                self.callback = callback

        source = Source()
        system.attach_reward_source(source)
        await source.callback("Evil Mode")
        assert await memory_store.get_setting("persona.current") == "evil"

    @pytest.mark.asyncio
    async def test_show_flow_prefers_settings(self, system, memory_store):
        assert await system.reload_show_flow() is True
        assert system.show_flow.steps == [ShowStep("0 20 * * *", (Action(ActionKind.SCENE, "Live"),))]

        steps = [{"cron": "30 21 * * *", "actions": [{"kind": "say", "value": "good night"}]}]
        await memory_store.set_setting("showflow.steps", orjson.dumps(steps).decode())
        assert await system.reload_show_flow() is True
        assert system.show_flow.steps == [ShowStep("30 21 * * *", (Action(ActionKind.SAY, "good night"),))]

        await memory_store.set_setting("showflow.steps", '[{"cron": "bogus"}]')
        assert await system.reload_show_flow() is False
        assert system.show_flow.steps[0].schedule == "30 21 * * *"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["[1]", '[{"cron": "0 * * * *", "actions": ["say hi"]}]'])
    async def test_malformed_show_flow_setting_keeps_current_steps(self, system, memory_store, raw):
        assert await system.reload_show_flow() is True
        await memory_store.set_setting("showflow.steps", raw)
        assert await system.reload_show_flow() is False
        assert system.show_flow.steps == [ShowStep("0 20 * * *", (Action(ActionKind.SCENE, "Live"),))]

    @pytest.mark.asyncio
    async def test_set_show_flow_persists_and_reloads(self, system, memory_store):
        await system.reload_show_flow()
        steps = '[{"cron": "0 22 * * *", "actions": [{"kind": "hotkey", "value": "Outro"}]}]'
        assert await system.set_show_flow(steps) is True
        assert await memory_store.get_setting("showflow.steps") == steps
        assert system.show_flow.steps == [ShowStep("0 22 * * *", (Action(ActionKind.HOTKEY, "Outro"),))]

        assert await system.set_show_flow("[1]") is False
        assert await memory_store.get_setting("showflow.steps") == steps
        assert system.show_flow.steps[0].schedule == "0 22 * * *"

    @pytest.mark.asyncio
    async def test_chat_message_reaches_pipeline(self, memory_store):
        system = MainSystem(make_config(generation={"api_key": "sk-test"}), store=memory_store)
        system._build_components()
        generator = FakeGenerator()
        system.pipeline.generator = generator
        try:
            await system._on_chat_message(ChatEvent("twitch", "tsukiko", "alice", "hello", "42"))
            assert generator.calls[0][0] == "alice: hello"
        finally:
            await system.throttler.close()
            await system.generator.close()

    @pytest.mark.asyncio
    async def test_shutdown_runs_in_reverse_order(self, system):
        stopped = []

        def step(name, fail=False):
            async def stop():
                stopped.append(name)
                if fail:
                    raise RuntimeError("boom")

            return name, stop

        system._shutdown_steps = [step("database"), step("integrations", fail=True), step("throttler")]
        await system.shutdown()
        assert stopped == ["throttler", "integrations", "database"]

        # 重复调用不会再次执行
        await system.shutdown()
        assert stopped == ["throttler", "integrations", "database"]
