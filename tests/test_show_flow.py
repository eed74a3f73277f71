"""
节目流程调度测试
"""

import pytest

from tests.helpers import wait_for
from tsukiko.chat.reaction.actions import Action, ActionKind
from tsukiko.common.exceptions import InvalidShowStepError
from tsukiko.config.official_configs import ShowStepConfig
from tsukiko.schedule.show_flow import (
    ShowFlowScheduler,
    ShowStep,
    parse_step,
    run_step,
    steps_from_config,
    steps_from_settings,
    validate_cron,
)

EVERY_SECOND = "* * * * * *"


def say(value: str) -> Action:
    return Action(ActionKind.SAY, value)


class TestShowFlowScheduler:
    @pytest.fixture
    async def scheduler(self):
        scheduler = ShowFlowScheduler()
        yield scheduler
        await scheduler.stop()

    @pytest.fixture
    def executed(self):
        return []

    @pytest.fixture
    def execute(self, executed):
        async def _execute(action: Action):
            executed.append(action.value)

        return _execute

    @pytest.mark.asyncio
    async def test_reload_replaces_previous_steps(self, scheduler, executed, execute):
        await scheduler.load([ShowStep(EVERY_SECOND, (say("A"),))], execute)
        await scheduler.load([ShowStep(EVERY_SECOND, (say("B"),))], execute)

        assert scheduler.job_count == 1
        assert await wait_for(lambda: len(executed) >= 1, timeout=3.0)
        assert set(executed) == {"B"}

    @pytest.mark.asyncio
    async def test_invalid_reload_keeps_current_steps(self, scheduler, execute):
        current = [ShowStep(EVERY_SECOND, (say("A"),))]
        await scheduler.load(current, execute)

        with pytest.raises(InvalidShowStepError):
            await scheduler.load([ShowStep("*/5 * * * *"), ShowStep("not a cron")], execute)

        assert scheduler.steps == current
        assert scheduler.job_count == 1

    @pytest.mark.asyncio
    async def test_stop(self, scheduler, execute):
        await scheduler.load([ShowStep("0 * * * *"), ShowStep("30 * * * *")], execute)
        assert scheduler.job_count == 2
        await scheduler.stop()
        assert scheduler.job_count == 0
        assert scheduler.steps == []


class TestRunStep:
    @pytest.mark.asyncio
    async def test_failed_action_does_not_stop_the_rest(self):
        executed = []

        async def execute(action: Action):
            if action.value == "bad":
                raise RuntimeError("boom")
            executed.append(action.value)

        await run_step(ShowStep(EVERY_SECOND, (say("one"), say("bad"), say("two"))), execute)
        assert executed == ["one", "two"]


class TestParsing:
    def test_validate_cron(self):
        validate_cron("*/10 * * * *")
        validate_cron(EVERY_SECOND)
        with pytest.raises(InvalidShowStepError):
            validate_cron("every minute")

    def test_parse_step_aliases(self):
        step = parse_step(
            {
                "schedule": "*/5 * * * *",
                "actions": [
                    {"type": "obs_scene", "value": "Intro"},
                    {"kind": "dance", "value": "x"},
                    {"kind": "say", "value": "hello"},
                ],
            }
        )
        assert step.schedule == "*/5 * * * *"
        assert step.actions == (Action(ActionKind.SCENE, "Intro"), say("hello"))

    def test_parse_step_requires_cron(self):
        with pytest.raises(InvalidShowStepError):
            parse_step({"actions": []})

    def test_steps_from_settings(self):
        assert steps_from_settings({}) is None
        steps = steps_from_settings(
            {"showflow.steps": '[{"cron": "0 * * * *", "actions": [{"kind": "persona", "value": "evil"}]}]'}
        )
        assert steps == [ShowStep("0 * * * *", (Action(ActionKind.PERSONA, "evil"),))]

    @pytest.mark.parametrize("raw", ["{oops", '{"cron": "0 * * * *"}'])
    def test_steps_from_settings_rejects_bad_json(self, raw):
        with pytest.raises(InvalidShowStepError):
            steps_from_settings({"showflow.steps": raw})

    @pytest.mark.parametrize(
        "raw",
        [
            "[1]",
            '["0 * * * *"]',
            '[{"cron": "0 * * * *", "actions": ["say hi"]}]',
            '[{"cron": "0 * * * *", "actions": {"kind": "say"}}]',
            '[{"cron": "0 * * * *", "actions": [{"kind": 3, "value": "x"}]}]',
            '[{"cron": 5}]',
        ],
    )
    def test_steps_from_settings_rejects_wrong_shape(self, raw):
        with pytest.raises(InvalidShowStepError):
            steps_from_settings({"showflow.steps": raw})

    def test_steps_from_config(self):
        config_steps = [ShowStepConfig(cron="0 20 * * *", actions=[{"kind": "scene", "value": "Live"}])]
        assert steps_from_config(config_steps) == [ShowStep("0 20 * * *", (Action(ActionKind.SCENE, "Live"),))]
