from __future__ import annotations

from pathlib import Path
from typing import Optional, Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from exam_pipeline.db.models import Base, PipelineSnapshot
from exam_pipeline.errors import ResumabilityError
from exam_pipeline.utils.logging_config import get_logger
from exam_pipeline.workflow.state import PipelineState

logger = get_logger(__name__)

SQL_SCHEMES = ("sqlite://", "postgres://", "postgresql://", "postgresql+")


def is_sql_url(url: str) -> bool:
    return url.startswith(SQL_SCHEMES)


def normalize_db_url(db_url: str) -> str:
    if db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql://", 1)
    return db_url


def create_engine_and_session(db_url: str) -> Tuple[Engine, sessionmaker]:
    db_url = normalize_db_url(db_url)
    if db_url.startswith("sqlite:///") and db_url != "sqlite:///:memory:":
        Path(db_url.replace("sqlite:///", "", 1)).parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(db_url, future=True, echo=False)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
    return engine, SessionLocal


class SqlStateStore:
    """PipelineState kept as one JSON row per state key in a SQL database."""

    def __init__(self, db_url: str, *, state_key: str = "default") -> None:
        self.db_url = normalize_db_url(db_url)
        self.state_key = state_key
        self.engine, self.SessionLocal = create_engine_and_session(self.db_url)
        Base.metadata.create_all(self.engine)

    @property
    def location(self) -> str:
        return f"{self.engine.url.render_as_string(hide_password=True)}#{self.state_key}"

    def exists(self) -> bool:
        with self.SessionLocal() as session:
            return session.get(PipelineSnapshot, self.state_key) is not None

    def load(self) -> Optional[PipelineState]:
        try:
            with self.SessionLocal() as session:
                row = session.get(PipelineSnapshot, self.state_key)
                payload = dict(row.payload) if row is not None else None
        except SQLAlchemyError as exc:
            raise ResumabilityError(f"Pipeline state at {self.location} is unreadable: {exc}") from exc
        if payload is None:
            return None
        try:
            return PipelineState.model_validate(payload)
        except (TypeError, ValueError) as exc:
            raise ResumabilityError(f"Pipeline state at {self.location} is unreadable: {exc}") from exc

    def save(self, state: PipelineState) -> None:
        with self.SessionLocal() as session:
            session.merge(
                PipelineSnapshot(
                    state_key=self.state_key,
                    overall_status=state.overall_status.value,
                    payload=state.model_dump(mode="json"),
                )
            )
            session.commit()
        logger.debug("Persisted state snapshot | key=%s status=%s", self.state_key, state.overall_status.value)

    def delete(self) -> bool:
        with self.SessionLocal() as session:
            row = session.get(PipelineSnapshot, self.state_key)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


__all__ = ["SqlStateStore", "create_engine_and_session", "is_sql_url", "normalize_db_url"]
