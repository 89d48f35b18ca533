import pytest

from src.llms import llm as llm_module
from src.llms.llm import get_llm_by_type


@pytest.fixture(autouse=True)
def empty_cache(monkeypatch):
    monkeypatch.setattr(llm_module, "_llm_cache", {})
    monkeypatch.setenv("BASIC_MODEL", "qwen-plus")
    monkeypatch.setenv("BASIC_API_KEY", "test")
    monkeypatch.delenv("SUMMARY_MODEL", raising=False)


def test_model_override_replaces_configured_model():
    assert get_llm_by_type("basic").model_name == "qwen-plus"
    assert get_llm_by_type("basic", model="qwen-max").model_name == "qwen-max"


def test_instances_are_cached_per_model():
    first = get_llm_by_type("basic", model="qwen-max")

    assert get_llm_by_type("basic", model="qwen-max") is first
    assert get_llm_by_type("basic", model=" ") is get_llm_by_type("basic")
    assert get_llm_by_type("basic") is not first


def test_summary_falls_back_to_basic_settings():
    assert get_llm_by_type("summary").model_name == "qwen-plus"


def test_missing_model_raises(monkeypatch):
    monkeypatch.delenv("BASIC_MODEL")

    with pytest.raises(ValueError):
        get_llm_by_type("basic")
