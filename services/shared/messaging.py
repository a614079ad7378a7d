"""
Shared: メッセージチャネル (Redis Streams)

Pub/Sub は fire-and-forget で、購読側が停止している間のメッセージは失われる。
在庫の更新通知は失ってはいけないので、Redis Streams のコンシューマグループを使う。

  - publish: XADD でストリームに永続化する
  - consume: XREADGROUP で 1 件ずつ取り出し、ハンドラ成功後に XACK する
  - ハンドラが失敗したメッセージは同じトピックに再投入する (at-least-once)
  - 再投入が max_deliveries に達したものは <topic>:dead-letter に退避する

┌──────────────┐  XADD   ┌──────────────┐ XREADGROUP ┌───────────────────┐
│ Order Service │ ──────▶ │ stock-updates │ ─────────▶ │ Inventory Service │
└──────────────┘         └──────────────┘  XACK      └───────────────────┘
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

import redis.asyncio as aioredis
from pydantic import BaseModel, ValidationError
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
Handler = Callable[[M], Awaitable[None]]


class MessageChannelError(Exception):
    """チャネルへの発行に失敗した"""


def dead_letter_topic(topic: str) -> str:
    return f"{topic}:dead-letter"


class RedisStreamChannel:
    def __init__(
        self,
        redis: aioredis.Redis,
        group: str,
        consumer: str,
        max_deliveries: int = 5,
    ):
        self.redis = redis
        self.group = group
        self.consumer = consumer
        self.max_deliveries = max_deliveries

    async def publish(self, topic: str, message: BaseModel) -> str:
        """メッセージをストリームに追記し、メッセージ ID を返す。"""
        fields = {
            "type": type(message).__name__,
            "payload": message.model_dump_json(),
            "attempt": "1",
        }
        try:
            message_id = await self.redis.xadd(topic, fields)
        except RedisError as e:
            raise MessageChannelError(f"Failed to publish to {topic}") from e
        logger.info("Message %s published to %s: %s", message_id, topic, fields["payload"])
        return message_id

    async def ensure_group(self, topic: str) -> None:
        try:
            await self.redis.xgroup_create(topic, self.group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def consume_once(
        self,
        topic: str,
        model: type[M],
        handler: Handler,
        block_ms: int | None = None,
        pending: bool = False,
    ) -> int:
        """
        最大 1 件を取り出して処理し、処理した件数を返す。
        ストリームから削除済みのエントリは ACK だけして 1 件と数える。

        pending=True の場合は新着ではなく、このコンシューマに配送済みで
        未 ACK のメッセージ（前回のクラッシュで残ったもの）を読む。
        """
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {topic: "0" if pending else ">"},
            count=1,
            block=block_ms,
        )
        processed = 0
        for _stream, entries in response or []:
            for message_id, fields in entries:
                if not fields:
                    # PEL に残っているがストリームから削除済みのエントリ
                    await self.redis.xack(topic, self.group, message_id)
                    processed += 1
                    continue
                await self._dispatch(topic, model, handler, message_id, fields)
                processed += 1
        return processed

    async def consume(
        self,
        topic: str,
        model: type[M],
        handler: Handler,
        shutdown_event: asyncio.Event,
        block_ms: int = 1000,
        retry_delay: float = 1.0,
    ) -> None:
        """
        shutdown_event がセットされるまでトピックを購読する。
        1 トピックにつき同時に処理するメッセージは 1 件だけ。

        グループの作成と未 ACK メッセージの回収も読み取りと同じループで行い、
        Redis に接続できない間は retry_delay ごとにやり直す。
        """
        logger.info("Consuming %s as %s/%s", topic, self.group, self.consumer)
        recovered = False

        while not shutdown_event.is_set():
            try:
                if not recovered:
                    await self.ensure_group(topic)
                    while await self.consume_once(topic, model, handler, pending=True):
                        pass
                    recovered = True
                await self.consume_once(topic, model, handler, block_ms=block_ms)
            except RedisError:
                logger.exception("Failed to read from %s", topic)
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=retry_delay)
                except asyncio.TimeoutError:
                    pass

        logger.info("Stopped consuming %s", topic)

    async def _dispatch(
        self,
        topic: str,
        model: type[M],
        handler: Handler,
        message_id: str,
        fields: dict,
    ) -> None:
        attempt = int(fields.get("attempt", "1"))
        try:
            message = model.model_validate_json(fields["payload"])
        except (KeyError, ValidationError):
            logger.warning("Failed to deserialize message %s from %s: %s", message_id, topic, fields)
            await self._dead_letter(topic, message_id, fields)
            return

        try:
            await handler(message)
        except Exception:
            logger.exception(
                "Error processing message %s from %s (attempt %d)", message_id, topic, attempt
            )
            if attempt >= self.max_deliveries:
                await self._dead_letter(topic, message_id, fields)
            else:
                await self._requeue(topic, message_id, fields, attempt + 1)
            return

        await self.redis.xack(topic, self.group, message_id)
        logger.info("Message %s processed from %s", message_id, topic)

    async def _requeue(self, topic: str, message_id: str, fields: dict, attempt: int) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.xadd(topic, {**fields, "attempt": str(attempt)})
            pipe.xack(topic, self.group, message_id)
            await pipe.execute()

    async def _dead_letter(self, topic: str, message_id: str, fields: dict) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.xadd(dead_letter_topic(topic), {**fields, "source_id": message_id})
            pipe.xack(topic, self.group, message_id)
            await pipe.execute()
        logger.error("Message %s from %s moved to %s", message_id, topic, dead_letter_topic(topic))
