from __future__ import annotations

import logging
from typing import Optional

import httpx
from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from .db import get_db
from .engine import AnomalyEngine
from .models import Project, lookup_project_by_token

logger = logging.getLogger("anomalisa.deps")


def get_engine(request: Request) -> AnomalyEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="engine_not_ready")
    return engine


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.http_client


def resolve_project(db: Session, token: Optional[str]) -> Project:
    project = lookup_project_by_token(db, token or "")
    if project is None:
        # never echo the token back
        logger.info("rejected unknown project token")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown project token")
    return project


def get_project(
    x_project_token: Optional[str] = Header(None, alias="X-Project-Token"),
    db: Session = Depends(get_db),
) -> Project:
    return resolve_project(db, x_project_token)
