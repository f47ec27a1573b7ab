"""Tests for workflow pattern loading."""

import pytest

from procession.contracts import WorkflowPattern
from procession.exceptions import ConfigurationError
from procession.patterns import InMemoryPatternRepository, YamlPatternRepository


@pytest.mark.asyncio
async def test_yaml_repository_loads_fixture_patterns(patterns_dir):
    repo = YamlPatternRepository(patterns_dir)

    ids = {p.id for p in await repo.list_patterns()}
    assert ids == {"document_review", "expense_claim"}

    pattern = await repo.get_pattern("document_review")
    assert [s.id for s in pattern.steps] == ["start", "review", "end"]
    review = pattern.get_step("review")
    assert review.type == "approval"
    assert review.has_escalation
    assert review.escalation_rules[0].escalate_to == ["mgr"]
    assert pattern.metadata.category == "documents"


@pytest.mark.asyncio
async def test_missing_pattern_raises_key_error(tmp_path):
    repo = YamlPatternRepository(tmp_path / "nowhere")
    assert await repo.list_patterns() == []
    with pytest.raises(KeyError):
        await repo.get_pattern("document_review")


def test_register_rejects_conflicting_definition(review_pattern):
    repo = InMemoryPatternRepository([review_pattern])
    repo.register(review_pattern)

    conflicting = review_pattern.model_copy(update={"name": "Something else"})
    with pytest.raises(ConfigurationError):
        repo.register(conflicting)


def test_pattern_navigation(review_pattern: WorkflowPattern):
    assert review_pattern.step_index("review") == 1
    assert review_pattern.step_index("missing") == -1
    assert review_pattern.next_in_sequence("start").id == "review"
    assert review_pattern.next_in_sequence("end") is None
    assert review_pattern.progress_of("start") == 0
    assert review_pattern.progress_of("review") == 33
    assert review_pattern.progress_of("end") == 67
