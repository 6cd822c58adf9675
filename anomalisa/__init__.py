"""
Create the project table.

Run this locally or inside the container while the DB is up:
    python -m anomalisa
"""


def init_db():
    from .db import Base, engine
    from . import models  # noqa: F401  registers Project on Base

    Base.metadata.create_all(bind=engine)
