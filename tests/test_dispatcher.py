import json
from uuid import uuid4

import pytest

from api.services.dispatcher import (
    ImportJobDispatcher,
    ImportJobMessage,
    MalformedJobMessage,
    parse_job_message,
)
from api.services.job_queue import JobQueue


@pytest.mark.asyncio
async def test_dispatch_wire_shape(fake_redis):
    queue = JobQueue(fake_redis, queue_name="test_imports")
    job_id = uuid4()

    await ImportJobDispatcher(queue).dispatch(job_id, "csv/1700000000000-abc-leads.csv", 7)

    message = (await queue.receive(wait_seconds=0))[0]
    assert json.loads(message.body) == {
        "jobId": str(job_id),
        "storageKey": "csv/1700000000000-abc-leads.csv",
        "uploaderId": 7,
    }
    assert message.attributes == {"jobType": "csv_processing"}

    parsed = parse_job_message(message.body, message.attributes)
    assert parsed == ImportJobMessage(job_id=job_id, storage_key="csv/1700000000000-abc-leads.csv", uploader_id=7)


def test_parse_accepts_message_without_attributes():
    job_id = uuid4()
    body = json.dumps({"jobId": str(job_id), "storageKey": "csv/a.csv", "uploaderId": 3})
    assert parse_job_message(body).job_id == job_id


@pytest.mark.parametrize(
    "body",
    [
        "not json",
        json.dumps({"storageKey": "csv/a.csv", "uploaderId": 3}),
        json.dumps({"jobId": "not-a-uuid", "storageKey": "csv/a.csv", "uploaderId": 3}),
        json.dumps({"jobId": str(uuid4()), "storageKey": "", "uploaderId": 3}),
    ],
)
def test_parse_rejects_malformed_bodies(body):
    with pytest.raises(MalformedJobMessage):
        parse_job_message(body, {"jobType": "csv_processing"})


def test_parse_rejects_foreign_job_type():
    body = json.dumps({"jobId": str(uuid4()), "storageKey": "csv/a.csv", "uploaderId": 3})
    with pytest.raises(MalformedJobMessage):
        parse_job_message(body, {"jobType": "excel_processing"})
