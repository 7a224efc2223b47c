"""Scheduled query result storage.

Write side:
- save_query_result_rows: append rows, capped per query
- overwrite_query_result_rows: replace each reporting host's rows, capped per query

Read side returns rows in insertion order. Placeholder rows (``data`` is
NULL) record that a host answered without a usable payload; they are kept
for per-host reads and excluded from per-query reads and all counts.

All functions run inside the caller's session/transaction.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import delete, func, insert, select
from sqlalchemy.orm import Session

from fleetstate import models
from fleetstate.schemas import ScheduledQueryResultRow
from fleetstate.services.capacity import QueryReportCapacity

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Rows written and rows dropped at the cap by one ingestion call."""
    inserted: int = 0
    dropped: int = 0


def _payload_count(session: Session, query_id: int, host_id: int | None = None) -> int:
    stmt = select(func.count()).select_from(models.QueryResult).where(
        models.QueryResult.query_id == query_id,
        models.QueryResult.data.is_not(None),
    )
    if host_id is not None:
        stmt = stmt.where(models.QueryResult.host_id == host_id)
    return session.execute(stmt).scalar_one()


def _insert_rows(session: Session, rows: Sequence[ScheduledQueryResultRow]) -> None:
    """Insert rows with a single batched statement."""
    if not rows:
        return
    session.execute(
        insert(models.QueryResult),
        [
            {
                "query_id": row.query_id,
                "host_id": row.host_id,
                "last_fetched": row.last_fetched,
                "data": row.data,
            }
            for row in rows
        ],
    )


def save_query_result_rows(
    session: Session,
    rows: Sequence[ScheduledQueryResultRow],
    capacity: QueryReportCapacity,
) -> IngestResult:
    """Append result rows, keeping each query under its row cap.

    Rows may span several queries; each query's cap is checked against its
    own current count. Rows referencing unknown queries or hosts are stored
    as-is.
    """
    result = IngestResult()
    if not rows:
        return result

    # Input positions per query; the same row object may appear more than once
    by_query: dict[int, list[int]] = defaultdict(list)
    for position, row in enumerate(rows):
        by_query[row.query_id].append(position)

    admitted: list[int] = []
    for query_id in sorted(by_query):
        positions = by_query[query_id]
        current = _payload_count(session, query_id)
        decision = capacity.admit(current, [rows[p] for p in positions])
        admitted.extend(positions[i] for i in decision.positions)
        result.dropped += decision.dropped
        if decision.dropped:
            logger.debug(
                f"Query {query_id} report full ({current}/{capacity.max_rows}), "
                f"dropping {decision.dropped} row(s)"
            )

    to_insert = [rows[p] for p in sorted(admitted)]
    _insert_rows(session, to_insert)
    result.inserted = len(to_insert)
    return result


def overwrite_query_result_rows(
    session: Session,
    rows: Sequence[ScheduledQueryResultRow],
    capacity: QueryReportCapacity,
) -> IngestResult:
    """Replace the stored rows of every (query, host) pair present in ``rows``.

    The cap is checked against the query's current count minus the rows
    being replaced, so a host re-reporting the same volume is never
    squeezed out by its own previous report. Pairs are processed in
    ascending (query_id, host_id) order.
    """
    result = IngestResult()
    if not rows:
        return result

    groups: dict[tuple[int, int], list[ScheduledQueryResultRow]] = defaultdict(list)
    for row in rows:
        groups[(row.query_id, row.host_id)].append(row)

    for query_id, host_id in sorted(groups):
        group_rows = groups[(query_id, host_id)]
        query_count = _payload_count(session, query_id)
        host_count = _payload_count(session, query_id, host_id)
        decision = capacity.admit(query_count - host_count, group_rows)

        session.execute(
            delete(models.QueryResult).where(
                models.QueryResult.query_id == query_id,
                models.QueryResult.host_id == host_id,
            )
            .execution_options(synchronize_session=False)
        )
        _insert_rows(session, decision.admitted)

        result.inserted += len(decision.admitted)
        result.dropped += decision.dropped
        if decision.dropped:
            logger.debug(
                f"Query {query_id} report full, dropping {decision.dropped} "
                f"row(s) from host {host_id}"
            )
    return result


def query_result_rows(session: Session, query_id: int) -> list[ScheduledQueryResultRow]:
    """Payload-bearing rows for a query across all hosts."""
    stmt = (
        select(models.QueryResult)
        .where(
            models.QueryResult.query_id == query_id,
            models.QueryResult.data.is_not(None),
        )
        .order_by(models.QueryResult.id)
    )
    return [ScheduledQueryResultRow.model_validate(r) for r in session.scalars(stmt)]


def query_result_rows_for_host(
    session: Session,
    query_id: int,
    host_id: int,
) -> list[ScheduledQueryResultRow]:
    """All rows for one host and query, placeholders included."""
    stmt = (
        select(models.QueryResult)
        .where(
            models.QueryResult.query_id == query_id,
            models.QueryResult.host_id == host_id,
        )
        .order_by(models.QueryResult.id)
    )
    return [ScheduledQueryResultRow.model_validate(r) for r in session.scalars(stmt)]


def result_count_for_query(session: Session, query_id: int) -> int:
    return _payload_count(session, query_id)


def result_count_for_query_and_host(session: Session, query_id: int, host_id: int) -> int:
    return _payload_count(session, query_id, host_id)
