import json
import os

os.environ.setdefault("ENVIRONMENT", "testing")

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import pytest

from api.core.exceptions import DatabaseError, ExternalServiceError, LeadWriteError, NotFoundError, StagedFileDownloadError
from api.models.import_job import ImportJob, ImportJobStatus
from api.services.import_jobs import ClaimResult
from api.services.job_queue import LEASE_SCRIPT, RESTORE_SCRIPT

STORAGE_URL = "https://storage.test/object/sign/lead-imports/"


class FakePipeline:
    """Queues commands and runs them against the FakeRedis on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __getattr__(self, name):
        command = getattr(self._redis, name)

        def queue(*args, **kwargs):
            self._ops.append((command, args, kwargs))
            return self

        return queue

    async def execute(self):
        ops, self._ops = self._ops, []
        return [await command(*args, **kwargs) for command, args, kwargs in ops]


class FakeRedis:
    def __init__(self):
        self.lists = defaultdict(list)
        self.zsets = defaultdict(dict)
        self.hashes = defaultdict(dict)
        self.published = []
        self.fail_publish = False

    async def lpush(self, key, *values):
        for value in values:
            self.lists[key].insert(0, value)
        return len(self.lists[key])

    async def llen(self, key):
        return len(self.lists[key])

    async def zrem(self, key, *members):
        return sum(1 for member in members if self.zsets[key].pop(member, None) is not None)

    async def zcard(self, key):
        return len(self.zsets[key])

    async def hdel(self, key, *fields):
        return sum(1 for field in fields if self.hashes[key].pop(field, None) is not None)

    async def eval(self, script, numkeys, *keys_and_args):
        """Runs the queue's Lua scripts as Python, atomically by construction."""
        keys, args = keys_and_args[:numkeys], keys_and_args[numkeys:]

        if script == LEASE_SCRIPT:
            ready, leases, inflight = keys
            suffix, deadline = args
            if not self.lists[ready]:
                return None
            envelope = json.loads(self.lists[ready].pop())
            envelope["receive_count"] = envelope.get("receive_count", 0) + 1
            handle = f"{envelope['message_id']}:{suffix}"
            leased = json.dumps(envelope)
            self.hashes[leases][handle] = leased
            self.zsets[inflight][handle] = float(deadline)
            return [handle, leased]

        if script == RESTORE_SCRIPT:
            inflight, leases, ready = keys
            (now,) = args
            expired = [handle for handle, score in self.zsets[inflight].items() if score <= float(now)]
            restored = []
            for handle in sorted(expired, key=self.zsets[inflight].get):
                del self.zsets[inflight][handle]
                raw = self.hashes[leases].pop(handle, None)
                if raw is not None:
                    self.lists[ready].append(raw)
                    restored.append(raw)
            return restored

        raise NotImplementedError(script)

    async def publish(self, channel, message):
        if self.fail_publish:
            raise ConnectionError("redis went away")
        self.published.append((channel, message))
        return 1

    def pipeline(self, transaction=True):
        return FakePipeline(self)


class FakeObjectStore:
    def __init__(self):
        self.objects: Dict[str, tuple] = {}
        self.fail_put = False

    async def put(self, content, key, content_type):
        if self.fail_put:
            raise ExternalServiceError("Failed to store uploaded file")
        self.objects[key] = (content, content_type)

    async def signed_get_url(self, key, ttl_seconds=None):
        if key not in self.objects:
            raise StagedFileDownloadError(f"Could not sign staged file {key}")
        return f"{STORAGE_URL}{key}?token=signed"

    async def download(self, url):
        key = url[len(STORAGE_URL):].split("?", 1)[0]
        return self.objects[key][0]


class FakeImportJobRepository:
    """In-memory stand-in for ImportJobRepository with the same claim and overwrite rules."""

    def __init__(self):
        self.jobs: Dict = {}
        self.fail_mark_failed = False

    async def create(self, *, file_name, storage_key, uploader_id):
        job = ImportJob(
            id=uuid4(),
            file_name=file_name,
            storage_key=storage_key,
            upload_user_id=uploader_id,
            status=ImportJobStatus.PENDING,
            total_rows=0,
            successful_imports=0,
            failed_imports=0,
            validation_errors=[],
            created_at=datetime.now(timezone.utc) + timedelta(microseconds=len(self.jobs)),
        )
        self.jobs[job.id] = job
        return job

    async def mark_processing(self, job_id, attempt_id):
        job = self.jobs.get(job_id)
        if job is None:
            return ClaimResult.NOT_FOUND
        if job.status == ImportJobStatus.COMPLETED:
            return ClaimResult.ALREADY_COMPLETED
        job.status = ImportJobStatus.PROCESSING
        job.attempt_id = attempt_id
        job.started_at = datetime.now(timezone.utc)
        job.completed_at = None
        job.error_report = None
        return ClaimResult.CLAIMED

    def _holds_claim(self, job, attempt_id):
        return job.status == ImportJobStatus.PROCESSING and job.attempt_id == attempt_id

    async def mark_completed(self, job_id, attempt_id, **fields):
        job = self.jobs[job_id]
        if not self._holds_claim(job, attempt_id):
            return False
        for name, value in fields.items():
            setattr(job, name, value)
        job.validation_errors = list(fields["validation_errors"])
        job.status = ImportJobStatus.COMPLETED
        job.error_report = None
        job.completed_at = datetime.now(timezone.utc)
        return True

    async def mark_failed(self, job_id, error_report, attempt_id=None):
        if self.fail_mark_failed:
            raise DatabaseError(message="Import job store error")
        job = self.jobs[job_id]
        if attempt_id is None:
            if job.status != ImportJobStatus.PENDING:
                return False
        elif not self._holds_claim(job, attempt_id):
            return False
        job.status = ImportJobStatus.FAILED
        job.error_report = error_report
        job.total_rows = 0
        job.successful_imports = 0
        job.failed_imports = 0
        job.validation_errors = []
        job.completed_at = datetime.now(timezone.utc)
        return True

    async def get(self, job_id):
        job = self.jobs.get(job_id)
        if job is None:
            raise NotFoundError(message="Import job not found", details={"job_id": str(job_id)})
        return job

    async def list_for_uploader(self, uploader_id, limit=10):
        jobs = [job for job in self.jobs.values() if job.upload_user_id == uploader_id]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    async def find_stale_processing(self, older_than):
        cutoff = datetime.now(timezone.utc) - older_than
        return [
            job for job in self.jobs.values()
            if job.status == ImportJobStatus.PROCESSING and job.started_at < cutoff
        ]


class FakeLeadWriter:
    """Lead store keyed by phone; insert_contacts skips known phones."""

    def __init__(self, existing_phones: Optional[List[str]] = None):
        self.leads = {phone: None for phone in existing_phones or []}
        self.fail = False

    async def insert_contacts(self, rows):
        if self.fail:
            raise LeadWriteError("Lead store rejected the bulk insert")
        inserted = 0
        for row in rows:
            if row.phone not in self.leads:
                self.leads[row.phone] = row
                inserted += 1
        return inserted


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def repository():
    return FakeImportJobRepository()


@pytest.fixture
def lead_writer():
    return FakeLeadWriter()
