from __future__ import annotations

import json
import math
from typing import Any, Sequence

from pgvector.sqlalchemy import Vector
from sqlalchemy import Float, literal
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.sql.functions import FunctionElement

from helpdesk.core.config import EMBED_DIM


SQLITE_COSINE_FUNCTION = "helpdesk_cosine_similarity"


class cosine_similarity(FunctionElement):
    """``1 - cosine distance`` between a vector column and a query embedding."""

    type = Float()
    name = "cosine_similarity"
    inherit_cache = True


@compiles(cosine_similarity)
def _compile_pgvector(element: cosine_similarity, compiler: Any, **kw: Any) -> str:
    # pgvector's <=> operator is cosine distance; lower is more similar.
    column, embedding = list(element.clauses)
    return "(1 - (%s <=> %s))" % (compiler.process(column, **kw), compiler.process(embedding, **kw))


@compiles(cosine_similarity, "sqlite")
def _compile_sqlite(element: cosine_similarity, compiler: Any, **kw: Any) -> str:
    return "%s(%s)" % (SQLITE_COSINE_FUNCTION, compiler.process(element.clauses, **kw))


def similarity_to(column: Any, embedding: Sequence[float]) -> cosine_similarity:
    # Bind the query embedding with the column type so it serializes like stored vectors.
    return cosine_similarity(column, literal(list(embedding), Vector(EMBED_DIM)))


def _parse_vector(value: Any) -> list[float] | None:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return [float(item) for item in json.loads(value)]
    return [float(item) for item in value]


def sqlite_cosine_similarity(left: Any, right: Any) -> float | None:
    """Scalar SQLite function mirroring pgvector cosine similarity for local runs."""
    a = _parse_vector(left)
    b = _parse_vector(right)
    if a is None or b is None or len(a) != len(b):
        return None
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if norm == 0:
        # pgvector returns NaN here; NULL keeps the row out of threshold filters.
        return None
    return dot / norm
