# event_handler.py
import asyncio
import json
import logging
import redis
import redis.asyncio as aioredis
from uuid import uuid4
from typing import Dict, Any
from shared.models import Event
from shared.database import Database
from shared.errors import EventPublishError

logger = logging.getLogger(__name__)


class EventHandler:
    def __init__(
        self,
        db: Database,
        consumer_group: str = "Service_group",
        service_name: str = "Service",
        stream: str = "booking_stream",
        redis_host: str = "localhost",
        redis_port: int = 6379,
        redis_db: int = 0
    ):
        self.db = db
        self.consumer_group = consumer_group
        self.service_name = service_name
        self.stream = stream

        # Initialize Redis connection
        self.r = aioredis.Redis(
            connection_pool=aioredis.ConnectionPool(
                host=redis_host,
                port=redis_port,
                db=redis_db
            )
        )

    async def close(self):
        await self.r.aclose()

    async def publish_event(self, event_type: str, payload: Dict[str, Any]) -> str:
        event_id = str(uuid4())
        event = Event(event_id=event_id, event_type=event_type, payload=payload)

        # Save to outbox
        sql = """
            INSERT INTO outbox (event_id, event_type, payload)
            VALUES ($1, $2, $3)
        """
        await self.db.execute_query(sql, event_id, event_type, event.model_dump())

        # Publish to Redis stream
        try:
            await self.r.xadd(self.stream, {
                "event_id": event_id,
                "event_type": event_type,
                "payload": event.model_dump_json()
            })
        except redis.RedisError as e:
            raise EventPublishError(f"Could not publish {event_type} {event_id}: {e}") from e
        logger.info(f"Published event {event_type} with ID {event_id}")
        return event_id

    async def _ack(self, message_id):
        await self.r.xack(self.stream, self.consumer_group, message_id)

    @staticmethod
    def decode_message(message) -> Event:
        """Turn a raw stream entry into an Event; raises ValueError on malformed entries."""
        if not message:
            raise ValueError("Message has no fields (deleted from the stream?)")
        payload_key = b'payload' if b'payload' in message else 'payload'
        if payload_key not in message:
            raise ValueError(f"Message missing payload field: {message}")

        payload_value = message[payload_key]
        if isinstance(payload_value, bytes):
            try:
                payload_value = payload_value.decode('utf-8')
            except UnicodeDecodeError as e:
                raise ValueError(f"Failed to decode payload: {e}") from e

        try:
            payload_data = json.loads(payload_value)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in payload: {payload_value}, error: {e}") from e

        try:
            return Event(**payload_data)
        except Exception as e:
            raise ValueError(f"Failed to validate event: {payload_data}, error: {e}") from e

    async def _handle(self, message_id, message, process_callback) -> bool:
        logger.debug(f"Received raw message: {message}")
        try:
            event = self.decode_message(message)
        except ValueError as e:
            logger.error(str(e))
            await self._ack(message_id)
            return True

        # Save to inbox
        sql = """
            INSERT INTO inbox (event_id, event_type, payload)
            VALUES ($1, $2, $3)
            ON CONFLICT (event_id) DO NOTHING
        """
        await self.db.execute_query(sql, event.event_id, event.event_type, event.model_dump())

        try:
            await process_callback(event)
        except Exception as e:
            logger.error(f"Error in process_callback for {event.event_id}: {e}")
            return False

        await self._ack(message_id)
        return True

    async def consume_events(self, process_callback):
        # Create consumer group if it doesn't exist
        try:
            await self.r.xgroup_create(self.stream, self.consumer_group, id="0", mkstream=True)
        except redis.RedisError as e:
            if "BUSYGROUP" not in str(e):
                logger.error(f"Failed to create consumer group: {e}")
                raise

        # Entries delivered to this consumer but never acknowledged are read
        # again from id "0" at startup and after every failed callback.
        check_backlog = True
        last_id = "0"

        while True:
            try:
                events = await self.r.xreadgroup(
                    groupname=self.consumer_group,
                    consumername=self.service_name,
                    streams={self.stream: last_id if check_backlog else ">"},
                    count=10 if check_backlog else 1,
                    block=None if check_backlog else 1000
                )

                if check_backlog and not any(messages for _, messages in events or []):
                    check_backlog = False
                    continue

                if not events:
                    await asyncio.sleep(0.1)
                    continue

                failed = False
                for stream, messages in events:
                    for message_id, message in messages:
                        if check_backlog:
                            last_id = message_id
                        if not await self._handle(message_id, message, process_callback):
                            failed = True

                if failed and not check_backlog:
                    logger.warning(f"Retrying unacknowledged {self.stream} entries for {self.service_name}")
                    check_backlog, last_id = True, "0"
                    await asyncio.sleep(1)
                    continue

                await asyncio.sleep(0.1)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in consume_events loop: {e}")
                await asyncio.sleep(1)
