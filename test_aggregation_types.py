"""
Tests for the shared stage vocabulary and error classes.
"""

from pytest import raises

import aggregation_types
from aggregation_types import STAGE_TAGS, NoExecutorError, PipelinerError
from pipeliner import AggregationPipelineBuilder


def test_stage_tags():
    """
    Every stage tag is a `$`-prefixed operator, and every tag the builder emits is in the
    vocabulary.
    """
    assert len(STAGE_TAGS) == 16
    for tag in STAGE_TAGS:
        assert tag.startswith("$")
    assert aggregation_types.ADD_FIELDS == "$addFields"
    assert aggregation_types.UNION_WITH == "$unionWith"

    pipeline = (
        AggregationPipelineBuilder()
        .match({}).group({"_id": None}).sort({"a": 1}).limit(1).skip(1).set({"a": 1})
        .unset("a").project({"a": 1}).count("n").facet({}).out("c").merge("c")
        .lookup("c", "a", "b", "d").custom_unwind_lookup("c", "a", "d").add_fields({})
        .union_with("c")
        .assemble()
    )
    assert {list(stage)[0] for stage in pipeline} == STAGE_TAGS


def test_error_hierarchy():
    """
    The missing-executor error can be caught as a builder error or as a RuntimeError.
    """
    assert issubclass(NoExecutorError, PipelinerError)
    assert issubclass(NoExecutorError, RuntimeError)
    with raises(PipelinerError):
        raise NoExecutorError("no executor")
