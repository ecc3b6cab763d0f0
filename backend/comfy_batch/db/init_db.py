from typing import Optional

from sqlalchemy.engine import Engine
from sqlmodel import SQLModel

from comfy_batch.db.engine import engine as default_engine
# Import models so they are registered with SQLModel.metadata
from comfy_batch.models.job import ImageJob  # noqa: F401
from comfy_batch.core.config import settings


def init_db(db_engine: Optional[Engine] = None):
    SQLModel.metadata.create_all(db_engine or default_engine)

    # Ensure directory structure exists
    settings.ensure_dirs()
