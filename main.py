import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

from tabreaper.app import TabReaper
from tabreaper.browser.memory import InMemoryBrowser
from tabreaper.logging_config import setup_logging
from tabreaper.settings import YamlSettingsStore


logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = "config/settings.yaml"


async def main():
    """
    演示入口：
    - 从 YAML 读取设置（文件修改后自动热加载）
    - 用内存浏览器模拟用户打开/切换标签页
    - 模拟 popup 点一次 "立即扫描"
    - 支持 Ctrl+C 优雅退出
    """
    settings_path = os.getenv("TABREAPER_SETTINGS", DEFAULT_SETTINGS_PATH)
    store = YamlSettingsStore(settings_path)
    browser = InMemoryBrowser()

    app = TabReaper(browser, store, reload_interval_seconds=1.0)

    async def demo_input():
        """演示：模拟一些标签页活动"""
        await asyncio.sleep(0.5)  # 等待 TabReaper 启动

        browser.open_tab("https://example.com/welcome", active=True)
        browser.open_tab("https://news.example.org/today")
        browser.open_tab("https://docs.python.org/3/")
        browser.open_tab("https://example.com/pinned", pinned=True)

        await asyncio.sleep(1.0)
        response = await app.run_scan()
        logger.info(f"Scan response: {response}")
        logger.info(f"Open tabs: {sorted(browser.tabs)}")

    demo_task = asyncio.create_task(demo_input())

    try:
        logger.info(f"Starting TabReaper with settings {settings_path}...")
        await app.run_forever()
    except KeyboardInterrupt:
        logger.info("Received KeyboardInterrupt")
    finally:
        demo_task.cancel()
        await asyncio.gather(demo_task, return_exceptions=True)
        logger.info("Main exit")


if __name__ == "__main__":
    load_dotenv()
    setup_logging()

    # Windows 下支持 Ctrl+C
    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
