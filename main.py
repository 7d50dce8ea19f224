"""
Notification Workflow 调度器主入口
"""
import asyncio
import logging

from dotenv import load_dotenv

# 加载环境变量
load_dotenv()

from notification_workflow.config import EngineSettings
from notification_workflow.core import WorkflowEngine
from notification_workflow.integrations import ExecutorRegistry


async def serve(settings: EngineSettings):
    """启动调度器并持续运行"""
    engine = await WorkflowEngine.from_database(
        settings,
        executors=ExecutorRegistry.default()
    )
    await engine.start()
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await engine.close()


if __name__ == "__main__":
    settings = EngineSettings.from_env()

    # 配置日志
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        asyncio.run(serve(settings))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Dispatcher stopped")
