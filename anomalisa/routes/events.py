import asyncio
import logging
from typing import Dict, List

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session

from ..db import get_db
from ..deps import get_engine, get_http_client, get_project, resolve_project
from ..engine import AnomalyEngine
from ..errors import InvalidInput, StoreUnavailable
from ..models import Project
from ..notify import dispatch_anomalies
from ..schemas import BucketCount, EventIn, EventOut

router = APIRouter()
logger = logging.getLogger("anomalisa.events")


@router.post("/", response_model=EventOut)
async def create_event(
    event: EventIn,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    engine: AnomalyEngine = Depends(get_engine),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    # sync SQLAlchemy query, kept off the event loop
    project = await asyncio.to_thread(resolve_project, db, event.token)

    try:
        anomalies = await engine.record_event(project.id, event.event_name, event.user_id)
    except InvalidInput as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StoreUnavailable as e:
        logger.error("event dropped for project %s: %s", project.id, e)
        raise HTTPException(status_code=503, detail="store_unavailable")

    if anomalies:
        background.add_task(
            dispatch_anomalies,
            client,
            anomalies,
            owner_email=project.owner_email,
            webhook_url=project.webhook_url,
        )

    return EventOut(anomalies=[a.to_wire() for a in anomalies])


@router.get("/counts", response_model=Dict[str, List[BucketCount]])
async def event_counts(
    project: Project = Depends(get_project),
    engine: AnomalyEngine = Depends(get_engine),
):
    try:
        return await engine.get_event_counts(project.id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store_unavailable")
