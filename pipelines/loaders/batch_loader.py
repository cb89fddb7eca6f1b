"""
Load pipeline batches into the internal datastore with upsert logic (idempotency)
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional
import json
import logging

from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import UpsertError
from models.base import PipelineMode
from models.pipeline import Pipeline
from models.pipeline_batch import PipelineBatch

logger = logging.getLogger(__name__)

_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
    "mysql": mysql.insert,
}


def batch_id_for(execution_id: str, part: int = 0) -> str:
    """Deterministic batch key: redelivery of an execution rewrites the same batch."""
    return f"{execution_id}:{part}"


def column_names(rows: List[Dict[str, Any]]) -> List[str]:
    """Ordered union of keys across rows."""
    names: Dict[str, None] = {}
    for row in rows:
        for key in row:
            names.setdefault(key, None)
    return list(names)


class PostLoadTransformer(ABC):
    """
    Destination-side transformation collaborator for ELT pipelines.

    The loader persists the raw batch and hands off; what happens at the
    destination is outside this service.
    """

    @abstractmethod
    async def submit(self, pipeline: Pipeline, batch_id: str, steps: List[Dict[str, Any]]) -> None:
        ...


class LoggingPostLoadTransformer(PostLoadTransformer):
    """Default hand-off: records that destination-side steps are pending."""

    async def submit(self, pipeline: Pipeline, batch_id: str, steps: List[Dict[str, Any]]) -> None:
        logger.info(
            f"ELT hand-off for pipeline {pipeline.id}: batch {batch_id} "
            f"with {len(steps)} destination-side steps"
        )


class BatchLoader:
    """
    Load record batches with idempotent upsert operations.

    Ensures:
    - One row per (pipeline_id, batch_id); re-running a batch overwrites it
    - Dialect-native upsert on PostgreSQL, SQLite and MySQL
    - Atomic transactions
    """

    def __init__(self, db_session: AsyncSession, post_load: Optional[PostLoadTransformer] = None):
        self.db = db_session
        self.post_load = post_load or LoggingPostLoadTransformer()

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect not in _INSERTS:
            raise UpsertError(f"Upsert not supported for dialect: {dialect}", context={"dialect": dialect})
        return _INSERTS[dialect], dialect

    async def load(
        self,
        pipeline: Pipeline,
        execution_id: str,
        batch_id: str,
        rows: List[Dict[str, Any]],
    ) -> int:
        """
        Upsert one batch (INSERT ON CONFLICT UPDATE).

        Args:
            pipeline: Pipeline the batch belongs to
            execution_id: Execution that produced the batch
            batch_id: Deterministic batch key (see ``batch_id_for``)
            rows: Records to persist; must be JSON-serializable after str() fallback

        Returns:
            Number of rows loaded
        """
        insert, dialect = self._insert()
        mode = PipelineMode(pipeline.mode).value
        # JSON columns need plain values
        payload = json.loads(json.dumps(rows, default=str))

        values = {
            "pipeline_id": pipeline.id,
            "batch_id": batch_id,
            "execution_id": execution_id,
            "mode": mode,
            "row_count": len(payload),
            "columns": column_names(payload),
            "rows": payload,
            "loaded_at": datetime.utcnow(),
        }

        stmt = insert(PipelineBatch).values(**values)
        updates = ("execution_id", "mode", "row_count", "columns", "rows", "loaded_at")
        if dialect == "mysql":
            stmt = stmt.on_duplicate_key_update(**{k: stmt.inserted[k] for k in updates})
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=["pipeline_id", "batch_id"],
                set_={k: stmt.excluded[k] for k in updates},
            )

        try:
            await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise UpsertError(
                "Failed to upsert pipeline batch",
                context={"pipeline_id": pipeline.id, "batch_id": batch_id},
                original_exception=e,
            )

        logger.info(f"Loaded {len(payload)} rows into batch {batch_id} for pipeline {pipeline.id}")
        return len(payload)

    async def load_raw_and_hand_off(
        self,
        pipeline: Pipeline,
        execution_id: str,
        batch_id: str,
        rows: List[Dict[str, Any]],
    ) -> int:
        """ELT: persist the untransformed batch, then pass the steps downstream."""
        loaded = await self.load(pipeline, execution_id, batch_id, rows)
        await self.post_load.submit(pipeline, batch_id, list(pipeline.transformation_steps or []))
        return loaded
