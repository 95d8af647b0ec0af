from core.dead_letter import DeadLetterQueue
from core.detached import DetachedTaskRunner
from core.errors import SyncResult
from core.full_sync import FullSyncResult


def test_successful_tasks_leave_no_dead_letters(runner, dead_letters):
    calls = []

    runner.submit("noop", lambda value: calls.append(value) or SyncResult.ok("done"), 1, replay={"record_id": "a"})

    assert calls == [1]
    assert dead_letters.pending() == []


def test_failed_results_are_dead_lettered_with_replay_payload(runner, dead_letters):
    runner.submit("sync users:a", lambda: SyncResult.failed("quota exceeded"), replay={"collection": "users"})
    runner.submit("push users", lambda: FullSyncResult(False, "backend down"), replay={"collection": "form"})

    pending = dead_letters.pending()
    assert [entry["task"] for entry in pending] == ["sync users:a", "push users"]
    assert pending[0]["error"] == "quota exceeded"
    assert pending[0]["collection"] == "users"
    assert "failed_at" in pending[0]


def test_exceptions_are_contained(runner, dead_letters):
    def explode():
        raise RuntimeError("boom")

    assert runner.submit("explode", explode, replay={"record_id": "x"}) is None
    assert dead_letters.pending()[0]["error"] == "boom"


def test_failures_without_replay_are_only_logged(runner, dead_letters, caplog):
    runner.submit("report", lambda: SyncResult.failed("nope"))

    assert dead_letters.pending() == []
    assert "report failed: nope" in caplog.text


def test_threaded_runner_finishes_on_shutdown(tmp_path):
    queue = DeadLetterQueue(tmp_path / "letters.jsonl")
    runner = DetachedTaskRunner(max_workers=2, dead_letters=queue)

    futures = [runner.submit(f"task {index}", lambda: SyncResult.failed("x"), replay={"n": index}) for index in range(3)]
    runner.shutdown(wait=True)

    assert all(future.done() for future in futures)
    assert sorted(entry["n"] for entry in queue.pending()) == [0, 1, 2]


def test_drain_keeps_entries_that_fail_again(tmp_path):
    queue = DeadLetterQueue(tmp_path / "letters.jsonl")
    queue.append([{"record_id": "keep"}, {"record_id": "drop"}, {"record_id": "raise"}])

    def handler(entry):
        if entry["record_id"] == "raise":
            raise RuntimeError("still broken")
        return entry["record_id"] == "drop"

    assert queue.drain(handler) == 1
    assert [entry["record_id"] for entry in queue.pending()] == ["keep", "raise"]


def test_drain_removes_file_when_everything_replays(tmp_path):
    queue = DeadLetterQueue(tmp_path / "letters.jsonl")
    queue.append([{"record_id": "a"}])

    assert queue.drain(lambda entry: True) == 1
    assert not queue.path.exists()


def test_unreadable_lines_are_dropped(tmp_path):
    path = tmp_path / "letters.jsonl"
    path.write_text('{"record_id": "a"}\nnot json\n\n[1, 2]\n', encoding="utf-8")

    assert DeadLetterQueue(path).pending() == [{"record_id": "a"}]
