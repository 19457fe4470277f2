import re
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from api.core.exceptions import DatabaseError, NotFoundError
from api.models.import_job import ImportJob, ImportJobStatus
from api.services.import_jobs import ClaimResult, ImportJobRepository


class _Result:
    def __init__(self, rows=(), scalar=None):
        self._rows = list(rows)
        self._scalar = scalar

    def first(self):
        return self._rows[0] if self._rows else None

    def scalar_one_or_none(self):
        return self._scalar

    def scalars(self):
        return self

    def all(self):
        return self._rows


class _Session:
    """Fake AsyncSession that records statements and plays back scripted results."""

    def __init__(self, store):
        self.store = store

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def begin(self):
        return self

    async def execute(self, stmt):
        self.store.statements.append(stmt)
        if self.store.error:
            raise self.store.error
        return self.store.results.pop(0)

    async def get(self, model, ident):
        if self.store.error:
            raise self.store.error
        return self.store.jobs.get(ident)

    def add(self, obj):
        self.store.added.append(obj)


class _Store:
    def __init__(self, *results):
        self.results = list(results)
        self.statements = []
        self.added = []
        self.jobs = {}
        self.error = None

    def session_factory(self):
        return _Session(self)


def _compiled(stmt):
    compiled = stmt.compile(dialect=postgresql.dialect())
    return re.sub(r"\s+", " ", str(compiled)), compiled.params


def _where(sql):
    return sql.split(" WHERE ", 1)[1].split(" RETURNING ", 1)[0]


def _updated_row():
    return _Result(rows=[(uuid4(),)])


@pytest.mark.asyncio
async def test_claim_skips_completed_jobs_and_records_attempt():
    store = _Store(_updated_row())
    attempt_id = uuid4()

    claim = await ImportJobRepository(store.session_factory).mark_processing(uuid4(), attempt_id)

    assert claim is ClaimResult.CLAIMED
    sql, params = _compiled(store.statements[0])
    assert sql.startswith("UPDATE import_jobs SET")
    assert "import_jobs.status != " in _where(sql)
    assert params["attempt_id"] == attempt_id
    assert params["status"] == ImportJobStatus.PROCESSING
    assert params["error_report"] is None


@pytest.mark.asyncio
async def test_rejected_claim_tells_completed_from_missing():
    completed = _Store(_Result(), _Result(scalar=ImportJobStatus.COMPLETED))
    missing = _Store(_Result(), _Result(scalar=None))

    assert await ImportJobRepository(completed.session_factory).mark_processing(
        uuid4(), uuid4()
    ) is ClaimResult.ALREADY_COMPLETED
    assert await ImportJobRepository(missing.session_factory).mark_processing(
        uuid4(), uuid4()
    ) is ClaimResult.NOT_FOUND

    sql, _ = _compiled(completed.statements[1])
    assert sql.startswith("SELECT import_jobs.status FROM import_jobs WHERE")


@pytest.mark.asyncio
async def test_completion_requires_the_current_claim():
    store = _Store(_updated_row())
    attempt_id = uuid4()

    recorded = await ImportJobRepository(store.session_factory).mark_completed(
        uuid4(),
        attempt_id,
        total_rows=2,
        successful_imports=1,
        failed_imports=1,
        validation_errors=({"row_number": 2, "raw_record": {}, "error_message": "bad"},),
        processing_time_ms=12,
    )

    assert recorded is True
    sql, params = _compiled(store.statements[0])
    where = _where(sql)
    assert "import_jobs.status = " in where
    assert "import_jobs.attempt_id = " in where
    assert params["attempt_id_1"] == attempt_id
    assert params["status_1"] == ImportJobStatus.PROCESSING
    assert params["status"] == ImportJobStatus.COMPLETED
    assert params["validation_errors"] == [{"row_number": 2, "raw_record": {}, "error_message": "bad"}]
    assert params["error_report"] is None


@pytest.mark.asyncio
async def test_terminal_write_on_a_finished_job_is_rejected():
    store = _Store(_Result(), _Result())
    repository = ImportJobRepository(store.session_factory)

    assert await repository.mark_failed(uuid4(), "download_failed: gone", uuid4()) is False
    assert await repository.mark_completed(
        uuid4(),
        uuid4(),
        total_rows=0,
        successful_imports=0,
        failed_imports=0,
        validation_errors=[],
        processing_time_ms=1,
    ) is False

    for stmt in store.statements:
        where = _where(_compiled(stmt)[0])
        assert "import_jobs.status = " in where
        assert "import_jobs.attempt_id = " in where


@pytest.mark.asyncio
async def test_failure_zeroes_counts():
    store = _Store(_updated_row())

    await ImportJobRepository(store.session_factory).mark_failed(
        uuid4(), "parse_failed: bad bytes", uuid4()
    )

    _, params = _compiled(store.statements[0])
    assert params["status"] == ImportJobStatus.FAILED
    assert params["error_report"] == "parse_failed: bad bytes"
    assert (params["total_rows"], params["successful_imports"], params["failed_imports"]) == (0, 0, 0)
    assert params["validation_errors"] == []


@pytest.mark.asyncio
async def test_failure_without_attempt_only_touches_pending_jobs():
    store = _Store(_updated_row())

    await ImportJobRepository(store.session_factory).mark_failed(
        uuid4(), "dispatch_failed: job could not be queued"
    )

    sql, params = _compiled(store.statements[0])
    where = _where(sql)
    assert "import_jobs.status = " in where
    assert "attempt_id" not in where
    assert params["status_1"] == ImportJobStatus.PENDING


@pytest.mark.asyncio
async def test_create_adds_a_pending_job():
    store = _Store()

    job = await ImportJobRepository(store.session_factory).create(
        file_name="leads.csv", storage_key="csv/1-abc-leads.csv", uploader_id=7
    )

    assert store.added == [job]
    assert job.status == ImportJobStatus.PENDING
    assert (job.total_rows, job.successful_imports, job.failed_imports) == (0, 0, 0)
    assert job.upload_user_id == 7


@pytest.mark.asyncio
async def test_get_missing_job_raises_not_found():
    store = _Store()
    job_id = uuid4()

    with pytest.raises(NotFoundError) as exc_info:
        await ImportJobRepository(store.session_factory).get(job_id)

    assert exc_info.value.status_code == 404
    assert exc_info.value.details == {"job_id": str(job_id)}


@pytest.mark.asyncio
async def test_history_is_newest_first_and_limited():
    job = ImportJob(id=uuid4(), file_name="leads.csv", storage_key="csv/a.csv", upload_user_id=7)
    store = _Store(_Result(rows=[job]))

    jobs = await ImportJobRepository(store.session_factory).list_for_uploader(7, limit=5)

    assert jobs == [job]
    sql, params = _compiled(store.statements[0])
    assert "WHERE import_jobs.upload_user_id = " in sql
    assert "ORDER BY import_jobs.created_at DESC" in sql
    assert "LIMIT " in sql
    assert 5 in params.values()
    assert 7 in params.values()


@pytest.mark.asyncio
async def test_stale_sweep_selects_old_processing_jobs():
    store = _Store(_Result(rows=[]))

    assert await ImportJobRepository(store.session_factory).find_stale_processing(
        timedelta(minutes=60)
    ) == []

    sql, params = _compiled(store.statements[0])
    assert "import_jobs.status = " in sql
    assert "import_jobs.started_at < " in sql
    assert ImportJobStatus.PROCESSING in params.values()


@pytest.mark.asyncio
async def test_database_errors_keep_driver_text_out_of_details():
    store = _Store()
    store.error = OperationalError(
        "SELECT import_jobs.id FROM import_jobs", {"id": "x"}, Exception("password authentication failed")
    )

    with pytest.raises(DatabaseError) as exc_info:
        await ImportJobRepository(store.session_factory).get(uuid4())

    assert exc_info.value.details == {}
    assert "SQL" not in exc_info.value.message
