from exam_pipeline.db.models import Base, PipelineSnapshot
from exam_pipeline.db.state_store import SqlStateStore, create_engine_and_session

__all__ = ["Base", "PipelineSnapshot", "SqlStateStore", "create_engine_and_session"]
