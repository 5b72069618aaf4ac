"""
Types shared by the pipeline builder: the stage-tag vocabulary, aliases for the documents that
flow through a pipeline, the shapes of the structured stage parameters, and the errors the
builder raises.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Protocol, Sequence, TypedDict, Union

from bson.objectid import ObjectId

# Stage tags

MATCH = "$match"
GROUP = "$group"
SORT = "$sort"
LIMIT = "$limit"
SKIP = "$skip"
SET = "$set"
UNSET = "$unset"
PROJECT = "$project"
COUNT = "$count"
FACET = "$facet"
OUT = "$out"
MERGE = "$merge"
LOOKUP = "$lookup"
UNWIND = "$unwind"
ADD_FIELDS = "$addFields"
UNION_WITH = "$unionWith"

STAGE_TAGS = frozenset([
    MATCH, GROUP, SORT, LIMIT, SKIP, SET, UNSET, PROJECT, COUNT, FACET, OUT, MERGE, LOOKUP,
    UNWIND, ADD_FIELDS, UNION_WITH,
])

# Document types -- more for readability than anything else.

BSONprimitive = Union[type(None), bool, int, float, str, datetime, ObjectId]
BSONarray = List["BSONvalue"]
BSONobject = Dict[str, "BSONvalue"]
BSONvalue = Union[BSONprimitive, BSONobject, BSONarray]

Expression = Dict[str, Any]
Stage = Dict[str, Any]
Pipeline = List[Stage]

SortDirection = Literal[1, -1]
WhenMatched = Literal["replace", "keepExisting", "merge", "fail"]
WhenNotMatched = Literal["insert", "discard", "fail"]


# Structured stage parameters

class LocalFieldAlias(TypedDict):
    """
    A local field for a sub-pipeline lookup that is bound under a different name: `ref` is the
    path on the input documents, `alias` the variable name used as `$$alias` in the sub-pipeline.
    """
    ref: str
    alias: str


LocalField = Union[str, LocalFieldAlias]


class MergeTarget(TypedDict):
    """
    A `$merge` output collection in another database.
    """
    db: str
    coll: str


MergeInto = Union[str, MergeTarget]


class AggregationExecutor(Protocol):
    """
    Anything that can run an aggregation pipeline: a pymongo `Collection` (returns a cursor), a
    pymongo `AsyncCollection` (returns an awaitable cursor) or a motor collection (returns an
    async-iterable cursor).
    """

    def aggregate(self, pipeline: Sequence[Mapping[str, Any]]) -> Any:
        ...


# Error classes

class PipelinerError(Exception):
    """
    Base class for errors raised by the pipeline builder itself.
    """


class NoExecutorError(PipelinerError, RuntimeError):
    """
    Raised when a pipeline is executed by a builder that was constructed without an executor.
    """
