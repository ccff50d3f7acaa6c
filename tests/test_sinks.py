import io
from datetime import UTC, datetime

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine

from pickup_audit.audit.sinks import AuditSink, DatabaseSink, StdoutSink
from pickup_audit.models import Task, TaskStatus
from pickup_audit.repositories.task_repo import OutboxError, TaskRepository
from pickup_audit.schemas.audit import AuditRecord
from tests.conftest import make_record


def test_stdout_sink_filter_is_case_insensitive_substring():
    stream = io.StringIO()
    sink = StdoutSink(filter="FAIL", stream=stream)

    sink.process(
        [make_record("ok"), make_record("fail: db down"), make_record("retry fail")]
    )

    lines = stream.getvalue().splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("Msg: fail: db down")
    assert lines[1].endswith("Msg: retry fail")


def test_stdout_sink_without_filter_prints_everything(capsys):
    sink = StdoutSink()
    record = AuditRecord(
        timestamp=datetime(2024, 5, 1, 12, 30, tzinfo=UTC),
        order_id="42",
        old_state="accepted",
        new_state="delivered",
        message="status transition succeeded",
    )

    sink.process([record, make_record("other")])

    out = capsys.readouterr().out.splitlines()
    assert out[0] == (
        "STDOUT: 2024-05-01T12:30:00+00:00 | Order: 42 | accepted -> delivered | "
        "Msg: status transition succeeded"
    )
    assert len(out) == 2


def test_stdout_sink_writes_nothing_when_all_filtered():
    stream = io.StringIO()
    StdoutSink(filter="missing", stream=stream).process([make_record("ok")])
    assert stream.getvalue() == ""


def test_sinks_satisfy_protocol(repository: TaskRepository):
    assert isinstance(StdoutSink(), AuditSink)
    assert isinstance(DatabaseSink(repository), AuditSink)


def test_database_sink_stores_one_task_per_record(repository: TaskRepository, db_session):
    records = [make_record(f"m{i}", order_id=str(i)) for i in range(3)]

    DatabaseSink(repository).process(records)

    tasks = db_session.query(Task).order_by(Task.id).all()
    assert len(tasks) == 3
    assert all(task.status == TaskStatus.CREATED.value for task in tasks)
    assert all(task.attempt_count == 0 for task in tasks)
    assert [AuditRecord.from_payload(task.audit_data) for task in tasks] == records


def test_database_sink_uses_a_single_insert(repository: TaskRepository, engine: Engine):
    statements: list[str] = []

    def _capture(conn, cursor, statement, parameters, context, executemany):
        statements.append(statement)

    event.listen(engine, "before_cursor_execute", _capture)
    try:
        DatabaseSink(repository).process([make_record(str(i)) for i in range(5)])
    finally:
        event.remove(engine, "before_cursor_execute", _capture)

    inserts = [s for s in statements if s.lstrip().upper().startswith("INSERT")]
    assert len(inserts) == 1


def test_database_sink_propagates_storage_errors(mocker):
    repository = mocker.Mock(spec=TaskRepository)
    repository.create_tasks.side_effect = OutboxError("database unreachable")

    with pytest.raises(OutboxError):
        DatabaseSink(repository).process([make_record()])


def test_database_sink_ignores_empty_batch(mocker):
    repository = mocker.Mock(spec=TaskRepository)
    DatabaseSink(repository).process([])
    repository.create_tasks.assert_not_called()
