"""
The AggregationPipelineBuilder class: the thing that the user imports when using mongo-pipeliner.

Each stage method appends a stage to the builder's pipeline and returns the builder, so calls can
be chained. The pipeline can then be taken with `assemble`, or run against a collection with
`execute`. Subclass the builder to name your own pipelines:

    class UserPipeliner(AggregationPipelineBuilder):
        def list_paginated(self, query, page, limit):
            return self.match(query).paginate(limit, page).assemble()
"""

import asyncio
import functools
import inspect
import logging
from typing import Any, Callable, List, Mapping, Optional, Sequence, TypeVar, Union

from aggregation_types import (
    ADD_FIELDS, COUNT, FACET, GROUP, LIMIT, LOOKUP, MATCH, MERGE, OUT, PROJECT, SET, SKIP, SORT,
    UNION_WITH, UNSET, UNWIND,
    AggregationExecutor, BSONobject, Expression, LocalField, MergeInto, NoExecutorError, Pipeline,
    SortDirection, Stage, WhenMatched, WhenNotMatched,
)

logger = logging.getLogger(__name__)

PipelineT = TypeVar("PipelineT", bound="AggregationPipelineBuilder")


def _aggregate_in_thread(aggregate: Callable[[Pipeline], Any], pipeline: Pipeline) -> Any:
    """
    Runs a blocking `aggregate` and drains its cursor. Awaitables and async cursors are returned
    as-is, for the event loop to finish.
    """
    cursor = aggregate(pipeline)
    if inspect.isawaitable(cursor) or hasattr(cursor, "__aiter__"):
        return cursor
    return list(cursor)


class AggregationPipelineBuilder:
    """
    A mutable, chainable container for an aggregation pipeline.

    `executor` is optional; without one the builder only assembles pipelines, and the caller runs
    them however they like. `pipeline` seeds the builder with existing stages; it is copied, not
    shared.

    Stage payloads are not validated. Whatever is passed in ends up in the pipeline as-is, and
    malformed stages are only reported by the server when the pipeline runs.
    """

    def __init__(self, executor: Optional[AggregationExecutor] = None,
                 pipeline: Optional[Sequence[Stage]] = None) -> None:
        self.executor = executor
        self._pipeline: Pipeline = list(pipeline) if pipeline is not None else []

    def __len__(self) -> int:
        return len(self._pipeline)

    def _add_stage(self: PipelineT, stage: Stage) -> PipelineT:
        self._pipeline.append(stage)
        return self

    # Simple stages

    def match(self: PipelineT, query: Mapping[str, Any]) -> PipelineT:
        """
        Input: query in standard Mongo query language. Output: the builder, with an added $match
        stage.
        """
        return self._add_stage({MATCH: query})

    def group(self: PipelineT, group: Mapping[str, Any]) -> PipelineT:
        """
        Input: a group specification -- an `_id` expression plus accumulator fields. Output: the
        builder, with an added $group stage.
        """
        return self._add_stage({GROUP: group})

    def sort(self: PipelineT, sort: Mapping[str, SortDirection]) -> PipelineT:
        """
        Input: a mapping of field to 1 (ascending) or -1 (descending). Output: the builder, with
        an added $sort stage.
        """
        return self._add_stage({SORT: sort})

    def limit(self: PipelineT, limit: int) -> PipelineT:
        """
        Passes at most `limit` documents on to the next stage.
        """
        return self._add_stage({LIMIT: limit})

    def skip(self: PipelineT, skip: int) -> PipelineT:
        """
        Drops the first `skip` documents.
        """
        return self._add_stage({SKIP: skip})

    def set(self: PipelineT, fields: Mapping[str, Any]) -> PipelineT:
        """
        Adds new fields to documents, or overwrites existing ones ($set stage).
        """
        return self._add_stage({SET: fields})

    def unset(self: PipelineT, fields: Union[str, List[str]]) -> PipelineT:
        """
        Removes one field, or a list of fields, from documents ($unset stage).
        """
        return self._add_stage({UNSET: fields})

    def project(self: PipelineT, projection: Mapping[str, Any]) -> PipelineT:
        """
        Reshapes each document, including, excluding or computing fields ($project stage).
        """
        return self._add_stage({PROJECT: projection})

    def count(self: PipelineT, field: str) -> PipelineT:
        """
        Replaces the documents with a single document holding their count under `field`.
        """
        return self._add_stage({COUNT: field})

    def facet(self: PipelineT, facets: Mapping[str, Sequence[Stage]]) -> PipelineT:
        """
        Runs several sub-pipelines over the same input documents ($facet stage).
        """
        return self._add_stage({FACET: facets})

    def add_fields(self: PipelineT, fields: Mapping[str, Any]) -> PipelineT:
        """
        Adds new fields to documents; the output keeps every existing field ($addFields stage).
        """
        return self._add_stage({ADD_FIELDS: fields})

    def unwind(self: PipelineT, path: str,
               preserve_null_and_empty_arrays: bool = False) -> PipelineT:
        """
        Outputs one document per element of the array at `path` (a `$`-prefixed field path).
        If `preserve_null_and_empty_arrays` is set, documents whose array is missing, null or
        empty are passed through instead of dropped.
        """
        return self._add_stage({UNWIND: {
            "path": path,
            "preserveNullAndEmptyArrays": preserve_null_and_empty_arrays,
        }})

    # Output stages

    def out(self: PipelineT, collection_name: str) -> PipelineT:
        """
        Writes the resulting documents to `collection_name`, replacing its contents ($out stage).
        """
        return self._add_stage({OUT: collection_name})

    def merge(self: PipelineT, into: MergeInto, on: Optional[Union[str, List[str]]] = None,
              when_matched: Optional[WhenMatched] = None,
              when_not_matched: Optional[WhenNotMatched] = None) -> PipelineT:
        """
        Writes the resulting documents into a collection, combining them with whatever is already
        there ($merge stage). The collection is created if it does not exist.

        `into` is a collection name, or a `{"db": ..., "coll": ...}` mapping for another
        database. `on` names the field(s) that identify a document. `when_matched` defaults to
        "merge" and `when_not_matched` to "insert"; all four keys are always written.
        """
        return self._add_stage({MERGE: {
            "into": into,
            "on": on,
            "whenMatched": when_matched or "merge",
            "whenNotMatched": when_not_matched or "insert",
        }})

    # Multi-collection stages

    def union_with(self: PipelineT, collection_name: str,
                   pipeline: Optional[Sequence[Stage]] = None) -> PipelineT:
        """
        Appends the documents of `collection_name`, optionally run through `pipeline` first, to
        the result set ($unionWith stage). Duplicates are kept.
        """
        return self._add_stage({UNION_WITH: {
            "coll": collection_name,
            "pipeline": pipeline if pipeline is not None else [],
        }})

    def lookup(self: PipelineT, from_: str, local_field: str, foreign_field: str,
               as_: str) -> PipelineT:
        """
        Equality join: documents of `from_` whose `foreign_field` equals the input document's
        `local_field` are collected into the array field `as_`.
        """
        return self._add_stage({LOOKUP: {
            "from": from_,
            "localField": local_field,
            "foreignField": foreign_field,
            "as": as_,
        }})

    def custom_lookup(self: PipelineT, collection_name: str, local_field: LocalField, as_: str,
                      match_expression: Optional[Expression] = None,
                      projection: Optional[Expression] = None) -> PipelineT:
        """
        Join against `collection_name` through a sub-pipeline, collecting the joined documents
        into the array field `as_`.

        `local_field` is bound as a variable for the sub-pipeline. A plain string binds the
        field under its own name; a `{"ref": path, "alias": name}` mapping binds the field at
        `path` as `name`, which is what you want for nested fields:

            builder.custom_lookup(
                collection_name="authors",
                local_field={"ref": "author.refId", "alias": "authorId"},
                match_expression={"$eq": ["$_id", "$$authorId"]},
                projection={"_id": 0, "name": 1},
                as_="author",
            )

        `match_expression` is an aggregation expression, wrapped in `$expr`, that filters the
        joined documents; `projection` shapes them. Both are optional.
        """
        if isinstance(local_field, str):
            variable, path = local_field, local_field
        else:
            variable, path = local_field["alias"], local_field["ref"]

        sub_pipeline: Pipeline = []
        if match_expression is not None:
            sub_pipeline.append({MATCH: {"$expr": match_expression}})
        if projection is not None:
            sub_pipeline.append({PROJECT: projection})

        return self._add_stage({LOOKUP: {
            "from": collection_name,
            "let": {variable: f"${path}"},
            "pipeline": sub_pipeline,
            "as": as_,
        }})

    def custom_unwind_lookup(self: PipelineT, collection_name: str, local_field: LocalField,
                             as_: str, match_expression: Optional[Expression] = None,
                             projection: Optional[Expression] = None) -> PipelineT:
        """
        Same as `custom_lookup`, followed by an $unwind of `as_` that keeps documents with no
        match. Useful for one-to-one joins.
        """
        self.custom_lookup(collection_name, local_field, as_,
                           match_expression=match_expression, projection=projection)
        return self.unwind(f"${as_}", preserve_null_and_empty_arrays=True)

    def paginate(self: PipelineT, limit: int = 10, page: int = 1) -> PipelineT:
        """
        Input: page size and 1-indexed page number. Output: the builder, with an added $skip
        stage followed by an added $limit stage.
        """
        skip = limit * (page - 1)
        if skip < 0:
            logger.warning("paginate(limit=%s, page=%s) produces a negative $skip of %s",
                           limit, page, skip)
        return self.skip(skip).limit(limit)

    def add_custom(self: PipelineT, stage: Stage) -> PipelineT:
        """
        Appends `stage` exactly as given. Nothing about its shape is checked; use this for stages
        the builder has no method for.
        """
        return self._add_stage(stage)

    # Lifecycle

    async def execute(self) -> List[BSONobject]:
        """
        Runs the pipeline on the builder's executor and returns the resulting documents. The
        pipeline itself is left untouched. Errors from the executor are not caught.

        A coroutine `aggregate` (pymongo's AsyncCollection) is awaited on the running loop. Any
        other `aggregate` (a sync pymongo Collection) is called, and its cursor drained, in the
        loop's default thread pool, so only the calling task waits on the server. Async cursors
        handed back from that call (motor) are drained on the loop.
        """
        if self.executor is None:
            raise NoExecutorError("No executor defined for this AggregationPipelineBuilder.")

        logger.debug("Executing aggregation pipeline with %d stage(s)", len(self._pipeline))
        aggregate = self.executor.aggregate
        if inspect.iscoroutinefunction(aggregate):
            cursor = await aggregate(self._pipeline)
        else:
            loop = asyncio.get_running_loop()
            cursor = await loop.run_in_executor(
                None, functools.partial(_aggregate_in_thread, aggregate, self._pipeline)
            )
            if inspect.isawaitable(cursor):
                cursor = await cursor
        if hasattr(cursor, "__aiter__"):
            documents = [document async for document in cursor]
        else:
            documents = list(cursor)
        logger.debug("Aggregation returned %d document(s)", len(documents))
        return documents

    def assemble(self, reset: bool = True) -> Pipeline:
        """
        Returns the pipeline. If `reset` is true (the default), the builder starts over with an
        empty pipeline and the returned list is the caller's; otherwise a copy is returned and
        the builder keeps its stages.
        """
        pipeline = self._pipeline
        if reset:
            self.reset()
            return pipeline
        return list(pipeline)

    def reset(self) -> None:
        """
        Discards every stage added so far.
        """
        logger.debug("Resetting aggregation pipeline (%d stage(s) discarded)", len(self._pipeline))
        self._pipeline = []
