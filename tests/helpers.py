"""测试用的假组件"""

import asyncio


class FakeSettings:
    """内存中的设置存储"""

    def __init__(self, initial: dict[str, str] | None = None):
        self.values: dict[str, str] = dict(initial or {})
        self.reads = 0

    async def get_all_settings(self) -> dict[str, str]:
        self.reads += 1
        return dict(self.values)

    async def set_setting(self, key: str, value: str) -> None:
        self.values[key] = value


class FakeAvatar:
    def __init__(self, fail: bool = False):
        self.calls: list[tuple[str, float]] = []
        self.fail = fail

    async def set_parameter(self, name: str, weight: float) -> None:
        self.calls.append((name, weight))
        if self.fail:
            raise RuntimeError("avatar offline")


class FakeScene:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []

    async def set_scene(self, name: str) -> None:
        self.calls.append(("scene", name))

    async def trigger_hotkey(self, name: str) -> None:
        self.calls.append(("hotkey", name))

    async def create_marker(self, label: str) -> None:
        self.calls.append(("marker", label))


class FakeGenerator:
    def __init__(self, reply: str = "hello there", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[tuple[str, str | None, str | None]] = []

    async def chat(self, prompt: str, system_prompt: str | None = None, safety_level: str | None = None) -> str:
        self.calls.append((prompt, system_prompt, safety_level))
        if self.error is not None:
            raise self.error
        return self.reply


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """轮询等待条件成立"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
