"""
文本生成客户端 (OpenAI 兼容接口)
"""

import time

from openai import APIConnectionError, APIStatusError, AsyncOpenAI, OpenAIError

from tsukiko.common.exceptions import GenerationError, IntegrationConfigError
from tsukiko.common.logger import get_logger

logger = get_logger("generation")

# 安全级别 -> 追加到 system prompt 的约束
SAFETY_INSTRUCTIONS = {
    "low": "",
    "medium": "Keep every reply safe for a public live stream.",
    "high": "Keep every reply strictly family friendly. Refuse anything unsafe, hateful or explicit.",
}


class GenerationClient:
    """chat-completions 客户端，实现 GenerationService"""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        temperature: float = 0.8,
        max_tokens: int = 256,
        timeout: float = 30.0,
        client: AsyncOpenAI | None = None,
    ):
        if client is None and not api_key:
            raise IntegrationConfigError("generation", "api_key")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0)
        self.last_latency: float | None = None

    @classmethod
    def from_config(cls, config) -> "GenerationClient":
        return cls(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url or None,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
        )

    @staticmethod
    def build_messages(prompt: str, system_prompt: str | None, safety_level: str | None) -> list[dict[str, str]]:
        system_parts = [part for part in (system_prompt, SAFETY_INSTRUCTIONS.get(safety_level or "", "")) if part]
        messages = []
        if system_parts:
            messages.append({"role": "system", "content": "\n".join(system_parts)})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def chat(self, prompt: str, system_prompt: str | None = None, safety_level: str | None = None) -> str:
        """生成一条回复

        Raises:
            GenerationError: 网络错误或接口返回错误状态
        """
        start_time = time.perf_counter()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(prompt, system_prompt, safety_level),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except APIConnectionError as e:
            raise GenerationError(f"无法连接生成服务: {e}") from e
        except APIStatusError as e:
            raise GenerationError(f"生成服务返回错误 {e.status_code}: {e.message}") from e
        except OpenAIError as e:
            raise GenerationError(f"生成失败: {e}") from e
        finally:
            self.last_latency = time.perf_counter() - start_time

        logger.debug(f"生成完成，耗时 {self.last_latency:.2f}s")
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def close(self):
        await self._client.close()
