import pytest

from resume_batcher.exceptions import ValidationError
from resume_batcher.extraction import PlainTextExtractor
from resume_batcher.queue import ItemStatus

from conftest import make_docs

RESUME_TEXT = " ".join(["Experienced python engineer with skills in sql and docker."] * 10)


def test_from_config_wires_defaults(system):
    assert isinstance(system.processor.extractor, PlainTextExtractor)
    assert system.queue.events is system.events
    assert system.processor.scheduler.config.max_batch_size == 10


def test_raw_text_file_processed_end_to_end(system):
    ids = system.queue_documents(
        [{"filename": "cv.txt", "content": RESUME_TEXT.encode("utf-8"), "mime_type": "text/plain"}],
        priority="high",
    )

    assert system.processor.process_next_batch() == 1

    item = system.queue.get_item(ids[0])
    assert item.status == ItemStatus.COMPLETED
    assert item.result["name"] == "Candidate 1"


def test_control_actions(system):
    system.start()
    try:
        assert system.control("pause") == {"action": "pause", "state": "paused"}
        assert system.control("resume")["state"] == "idle"
    finally:
        assert system.control("stop")["state"] == "stopped"


def test_control_unknown_action(system):
    with pytest.raises(ValidationError):
        system.control("restart")


@pytest.mark.parametrize(
    "count,expected",
    [(10, "30 minutes"), (100, "5.0 hours"), (1000, "2.1 days")],
)
def test_estimate_uses_fallback_throughput(system, count, expected):
    assert system.estimate_completion_time(count) == expected


def test_estimate_uses_recent_throughput(system):
    system.queue_documents(make_docs(4))
    system.processor.process_next_batch()

    # 4 per hour: 2 documents take half an hour
    assert system.estimate_completion_time(2) == "30 minutes"


def test_estimate_rejects_non_positive(system):
    with pytest.raises(ValidationError):
        system.estimate_completion_time(0)


def test_capacity(system):
    system.queue_documents(make_docs(3))

    capacity = system.capacity()

    assert capacity["queue_size"] == 3
    assert capacity["can_accept_more"] is True
    assert capacity["current_throughput"] == 0
    assert capacity["daily_target"] == 1000
    assert capacity["api_limits"] == {"granted": 0}
