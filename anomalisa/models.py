from __future__ import annotations

from typing import Optional

from sqlalchemy import Column, DateTime, String, func, select
from sqlalchemy.orm import Session

from .db import Base


class Project(Base):
    __tablename__ = "Projects"

    id = Column("Id", String(64), primary_key=True)
    name = Column("Name", String(200), nullable=False, index=True)
    token = Column("Token", String(128), nullable=False, unique=True, index=True)
    webhook_url = Column("WebhookUrl", String(1000), nullable=True)
    owner_email = Column("OwnerEmail", String(320), nullable=False)
    created_at_utc = Column(
        "CreatedAtUtc",
        DateTime(timezone=False),
        server_default=func.current_timestamp(),
        nullable=False,
    )


def lookup_project_by_token(db: Session, token: str) -> Optional[Project]:
    if not token:
        return None
    return db.execute(select(Project).where(Project.token == token)).scalar_one_or_none()
