"""Tsukiko 启动入口: python bot.py"""

import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.traceback import install

from tsukiko.common.logger import get_logger, initialize_logging, shutdown_logging

ROOT = Path(__file__).resolve().parent
ENV_FILE = ROOT / ".env"
ENV_TEMPLATE = ROOT / "template" / "template.env"
ENV_SIZE_LIMIT = 1024 * 1024

# 配置、数据库、日志都使用相对路径
os.chdir(ROOT)

initialize_logging()
install(extra_lines=3)
logger = get_logger("main")


def prepare_env() -> None:
    """没有 .env 时从模板生成一份，然后加载到进程环境变量"""
    if not ENV_FILE.exists():
        if not ENV_TEMPLATE.exists():
            logger.warning("缺少 .env 和 template/template.env，仅使用系统环境变量")
            return
        ENV_FILE.write_text(ENV_TEMPLATE.read_text(encoding="utf-8"), encoding="utf-8")
        logger.warning("已根据模板生成 .env，请填写 OBS_PASSWORD / TWITCH_OAUTH / OPENAI_API_KEY 等凭据")

    size = ENV_FILE.stat().st_size
    if size > ENV_SIZE_LIMIT:
        logger.error(f".env 文件过大 ({size} 字节)，已忽略")
        return
    load_dotenv(ENV_FILE)
    logger.info("已加载 .env")


async def run() -> int:
    prepare_env()

    # 凭据来自环境变量，主系统要等 .env 加载完再导入
    from tsukiko.main import MainSystem

    try:
        await MainSystem().run()
    except Exception:
        logger.exception("Tsukiko 异常退出")
        return 1
    return 0


def main() -> int:
    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("已被 Ctrl+C 中断")
        return 130
    finally:
        try:
            shutdown_logging()
        except Exception as e:
            print(f"关闭日志系统失败: {e}")


if __name__ == "__main__":
    sys.exit(main())
