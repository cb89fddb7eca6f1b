"""
Unit tests for the batch loader (idempotent upsert, ELT hand-off)
"""

from datetime import datetime

from sqlalchemy import func, select

from models import PipelineBatch
from models.base import PipelineMode
from pipelines.loaders.batch_loader import (
    BatchLoader,
    PostLoadTransformer,
    batch_id_for,
    column_names,
)


class RecordingPostLoad(PostLoadTransformer):
    def __init__(self):
        self.calls = []

    async def submit(self, pipeline, batch_id, steps):
        self.calls.append((pipeline.id, batch_id, steps))


class TestBatchLoader:

    def test_batch_id_is_deterministic(self):
        assert batch_id_for("exec-1") == "exec-1:0"
        assert batch_id_for("exec-1") == batch_id_for("exec-1")

    def test_column_names_union_in_order(self):
        assert column_names([{"a": 1}, {"b": 2, "a": 3}, {"c": None}]) == ["a", "b", "c"]

    async def test_load_persists_rows(self, db_session, make_pipeline):
        pipeline = await make_pipeline()
        loader = BatchLoader(db_session)

        loaded = await loader.load(pipeline, "exec-1", "exec-1:0", [
            {"id": 1, "seen_at": datetime(2024, 1, 15, 10, 0)},
            {"id": 2, "seen_at": None},
        ])

        assert loaded == 2
        batch = (await db_session.execute(select(PipelineBatch))).scalar_one()
        assert batch.row_count == 2
        assert batch.columns == ["id", "seen_at"]
        assert batch.rows[0] == {"id": 1, "seen_at": "2024-01-15 10:00:00"}
        assert batch.mode == "ETL"

    async def test_same_batch_is_overwritten(self, session_factory, make_pipeline):
        pipeline = await make_pipeline()

        async with session_factory() as db:
            await BatchLoader(db).load(pipeline, "exec-1", "exec-1:0", [{"id": 1}, {"id": 2}])
        async with session_factory() as db:
            await BatchLoader(db).load(pipeline, "exec-1", "exec-1:0", [{"id": 1}, {"id": 2}, {"id": 3}])

        async with session_factory() as db:
            count = (await db.execute(select(func.count(PipelineBatch.id)))).scalar_one()
            batch = (await db.execute(select(PipelineBatch))).scalar_one()
        assert count == 1
        assert batch.row_count == 3

    async def test_distinct_batches_coexist(self, db_session, make_pipeline):
        pipeline = await make_pipeline()
        loader = BatchLoader(db_session)

        await loader.load(pipeline, "exec-1", batch_id_for("exec-1"), [{"id": 1}])
        await loader.load(pipeline, "exec-2", batch_id_for("exec-2"), [{"id": 1}])

        count = (await db_session.execute(select(func.count(PipelineBatch.id)))).scalar_one()
        assert count == 2

    async def test_elt_loads_raw_and_hands_off(self, db_session, make_pipeline):
        steps = [{"type": "trim", "column": "name"}]
        pipeline = await make_pipeline(mode=PipelineMode.ELT, transformation_steps=steps)
        post_load = RecordingPostLoad()

        loaded = await BatchLoader(db_session, post_load=post_load).load_raw_and_hand_off(
            pipeline, "exec-1", "exec-1:0", [{"name": "  raw  "}]
        )

        assert loaded == 1
        batch = (await db_session.execute(select(PipelineBatch))).scalar_one()
        assert batch.mode == "ELT"
        assert batch.rows == [{"name": "  raw  "}]
        assert post_load.calls == [(pipeline.id, "exec-1:0", steps)]
