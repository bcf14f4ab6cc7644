"""
入站事件监听器 (Inbound Issue Event Listener)

订阅 Redis PubSub 频道 guardian:issue:new，宿主应用把错误/安全事件以 JSON 发布到该频道，
监听器解析为 RawEvent 后交给 AgentBrain。单个事件处理失败不会中断监听。

事件格式 (Event Format):
{"message": "...", "stack": "...", "kind": "unhandled_exception", "component": "...", ...}
"""
import asyncio

from pydantic import ValidationError

from guardian.core.logging import get_logger
from guardian.core.redis import get_redis
from guardian.healing.agent import AgentBrain
from guardian.healing.models import RawEvent

logger = get_logger(__name__)

# Redis PubSub 频道名称 - 新问题事件
CHANNEL = "guardian:issue:new"


async def handle_message(agent: AgentBrain, data: str) -> None:
    """解析一条消息并提交给 Agent；格式错误的消息记录后丢弃。"""
    try:
        raw = RawEvent.model_validate_json(data)
    except ValidationError as e:
        logger.warning("Received malformed issue event, skipping: %d validation error(s)", e.error_count())
        return
    result = await agent.submit_issue_event(raw)
    logger.info("Issue event handled: %s", result.summary())


async def issue_listener_loop(agent: AgentBrain) -> None:
    """后台任务入口：订阅频道并持续处理事件，直到被取消。"""
    redis = await get_redis()
    pubsub = redis.pubsub()
    await pubsub.subscribe(CHANNEL)
    logger.info("Issue listener subscribed to %s", CHANNEL)

    try:
        async for message in pubsub.listen():
            # 跳过订阅确认等非消息事件
            if message["type"] != "message":
                continue
            try:
                await handle_message(agent, message["data"])
            except Exception:
                logger.exception("Error handling issue event")
    except asyncio.CancelledError:
        logger.info("Issue listener shutting down")
        raise
    finally:
        await pubsub.unsubscribe(CHANNEL)
        await pubsub.aclose()
