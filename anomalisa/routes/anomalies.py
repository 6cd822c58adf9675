from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException

from ..deps import get_engine, get_project
from ..engine import AnomalyEngine
from ..errors import StoreUnavailable
from ..models import Project

router = APIRouter()


@router.get("/")
async def list_anomalies(
    project: Project = Depends(get_project),
    engine: AnomalyEngine = Depends(get_engine),
) -> List[Dict[str, Any]]:
    """
    Every stored anomaly for the caller's project, oldest first.
    Records expire 30 days after detection.
    """
    try:
        anomalies = await engine.get_anomalies(project.id)
    except StoreUnavailable:
        raise HTTPException(status_code=503, detail="store_unavailable")
    return [a.to_wire() for a in anomalies]
