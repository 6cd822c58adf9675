"""
Redis pub/sub ingestion worker.

Publishers send JSON messages {"projectId", "eventName", "userId"} to
INGEST_CHANNEL; each one is recorded exactly like POST /events/. Run with:

    python -m anomalisa.worker.event_consumer
"""
from dotenv import load_dotenv
load_dotenv()
import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from anomalisa import config
from anomalisa.db import SessionLocal
from anomalisa.engine import AnomalyEngine
from anomalisa.errors import InvalidInput, StoreUnavailable
from anomalisa.infra.redis_client import create_redis_async
from anomalisa.models import Project
from anomalisa.notify import dispatch_anomalies
from anomalisa.schemas import Anomaly
from anomalisa.store import create_store

logger = logging.getLogger("anomalisa.worker")


def parse_message(data: Any) -> Optional[Dict[str, str]]:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8", errors="replace")
    try:
        payload = json.loads(data)
    except (TypeError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return {
        "project_id": payload.get("projectId"),
        "event_name": payload.get("eventName"),
        "user_id": payload.get("userId"),
    }


async def handle_message(engine: AnomalyEngine, data: Any) -> List[Anomaly]:
    event = parse_message(data)
    if event is None:
        logger.warning("skipping malformed message: %r", data)
        return []
    try:
        return await engine.record_event(event["project_id"], event["event_name"], event["user_id"])
    except InvalidInput as e:
        logger.warning("skipping invalid event: %s", e)
        return []
    except StoreUnavailable:
        logger.exception("event dropped, store unavailable")
        return []


def load_contacts(project_id: str) -> Optional[Tuple[str, Optional[str]]]:
    """(owner_email, webhook_url) for a project, or None when no row exists."""
    db = SessionLocal()
    try:
        project = db.get(Project, project_id)
        if project is None:
            return None
        return project.owner_email, project.webhook_url
    finally:
        db.close()


async def notify_owner(client: httpx.AsyncClient, anomalies: List[Anomaly]) -> None:
    project_id = anomalies[0].project_id
    # sync session, so the lookup runs in a worker thread
    contacts = await asyncio.to_thread(load_contacts, project_id)
    if contacts is None:
        logger.warning("no project row for %s, alerts not sent", project_id)
        return
    owner_email, webhook_url = contacts
    await dispatch_anomalies(client, anomalies, owner_email=owner_email, webhook_url=webhook_url)


async def main(channel: str = config.INGEST_CHANNEL):
    redis = create_redis_async()
    store = create_store(redis)
    engine = AnomalyEngine(store)
    client = httpx.AsyncClient(timeout=config.NOTIFY_TIMEOUT_SECONDS)

    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    logger.info("subscribed %s", channel)

    try:
        while True:
            msg = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if not msg:
                await asyncio.sleep(0.05)
                continue
            anomalies = await handle_message(engine, msg["data"])
            if anomalies:
                logger.info("%d anomalies from %s", len(anomalies), channel)
                await notify_owner(client, anomalies)
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        await client.aclose()
        await store.close()


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
