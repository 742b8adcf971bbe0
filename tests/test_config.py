import pytest
from pathlib import Path
from pydantic import ValidationError

from resume_batcher.config import expand_dotted, load_yaml, merge_dicts, resolve_config
from resume_batcher.models import ResumeBatcherConfig


def test_default_config_loads():
    """Test default.yaml loads without errors."""
    config = resolve_config()
    assert isinstance(config, ResumeBatcherConfig)
    assert config.queue.max_queue_size == 2000
    assert config.batch.max_tokens_per_request == 800_000
    assert config.rate_limit.requests_per_day == 180
    assert config.processor.business_hours.end == 18


def test_dotted_override():
    """Test dotted overrides win over YAML defaults."""
    config = resolve_config({"batch.max_batch_size": 30})
    assert config.batch.max_batch_size == 30
    assert config.batch.min_batch_size == 10


def test_nested_override():
    """Test nested dict overrides merge with defaults."""
    config = resolve_config({"processor": {"enable_scheduling": True}})
    assert config.processor.enable_scheduling is True
    assert config.processor.dequeue_size == 20


def test_none_override_ignored():
    """Test None values leave the default in place."""
    config = resolve_config({"queue.max_retries": None})
    assert config.queue.max_retries == 3


def test_local_yaml_overrides_default(tmp_path):
    """Test local.yaml sits between defaults and overrides."""
    local = tmp_path / "local.yaml"
    local.write_text("rate_limit:\n  requests_per_minute: 6\nqueue:\n  max_retries: 5\n")

    config = resolve_config({"queue.max_retries": 2}, local_path=local)

    assert config.rate_limit.requests_per_minute == 6
    assert config.queue.max_retries == 2


def test_invalid_override_rejected():
    """Test invalid values fail at resolution time."""
    with pytest.raises(ValidationError):
        resolve_config({"batch.min_batch_size": 40})


def test_config_is_frozen():
    config = resolve_config()
    with pytest.raises(ValidationError):
        config.queue.max_retries = 10


def test_missing_yaml_returns_empty_dict():
    """Test graceful handling of missing config files."""
    result = load_yaml(Path("nonexistent.yaml"))
    assert result == {}


def test_missing_default_yaml_uses_model_defaults(tmp_path):
    config = resolve_config(default_path=tmp_path / "none.yaml", local_path=tmp_path / "none.yaml")
    assert config == ResumeBatcherConfig()


def test_merge_dicts_recursive():
    base = {"a": {"b": 1, "c": 2}, "d": 3}
    merged = merge_dicts(base, {"a": {"b": 10}})
    assert merged == {"a": {"b": 10, "c": 2}, "d": 3}
    assert base["a"]["b"] == 1


def test_expand_dotted():
    assert expand_dotted({"a.b.c": 1, "a.d": 2, "e": 3}) == {"a": {"b": {"c": 1}, "d": 2}, "e": 3}
