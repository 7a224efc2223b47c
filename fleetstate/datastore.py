"""Datastore facade.

Each public method is one logical operation and runs in exactly one
transaction through ``with_retry_tx``: deadlock and serialization failures
are retried from scratch, anything else rolls back and raises
DatastoreError naming the operation. The service functions called here are
written to be safe to re-run, which is what makes the retry transparent.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, Mapping, Sequence, TypeVar

from sqlalchemy.orm import Session

from fleetstate import metrics
from fleetstate.config import settings
from fleetstate.db import with_retry_tx
from fleetstate.schemas import HostOut, LabelOut, LabelSpec, ScheduledQueryResultRow
from fleetstate.services import labels, query_results
from fleetstate.services.capacity import QueryReportCapacity
from fleetstate.services.labels import MembershipChanges
from fleetstate.services.query_results import IngestResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Datastore:
    """Shared fleet state: label membership and scheduled query results.

    Args:
        session_factory: Callable returning a new Session; defaults to the
            module-level SessionLocal.
        capacity: Per-query row cap; defaults to settings.query_report_max_rows.
        hostname_batch_size: Hostnames per INSERT when applying manual label
            specs; defaults to settings.label_membership_batch_size.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        capacity: QueryReportCapacity | None = None,
        hostname_batch_size: int | None = None,
    ):
        self._session_factory = session_factory
        if capacity is None:
            capacity = QueryReportCapacity(settings.query_report_max_rows)
        self.capacity = capacity
        if hostname_batch_size is None:
            hostname_batch_size = settings.label_membership_batch_size
        self.hostname_batch_size = hostname_batch_size

    def _tx(self, operation: str, fn: Callable[[Session], T]) -> T:
        return with_retry_tx(fn, operation, session_factory=self._session_factory)

    # --- Query results: write side ---

    def save_query_result_rows(self, rows: Sequence[ScheduledQueryResultRow]) -> IngestResult:
        """Append rows; rows beyond a query's cap are silently dropped."""
        if not rows:
            return IngestResult()
        result = self._tx(
            "save query result rows",
            lambda s: query_results.save_query_result_rows(s, rows, self.capacity),
        )
        metrics.record_rows_inserted("save", result.inserted)
        metrics.record_rows_dropped("save", result.dropped)
        return result

    def overwrite_query_result_rows(self, rows: Sequence[ScheduledQueryResultRow]) -> IngestResult:
        """Replace each reporting host's rows; unknown queries/hosts never raise."""
        if not rows:
            return IngestResult()
        result = self._tx(
            "overwrite query result rows",
            lambda s: query_results.overwrite_query_result_rows(s, rows, self.capacity),
        )
        metrics.record_rows_inserted("overwrite", result.inserted)
        metrics.record_rows_dropped("overwrite", result.dropped)
        return result

    # --- Query results: read side ---

    def query_result_rows(self, query_id: int) -> list[ScheduledQueryResultRow]:
        return self._tx(
            "query result rows",
            lambda s: query_results.query_result_rows(s, query_id),
        )

    def query_result_rows_for_host(self, query_id: int, host_id: int) -> list[ScheduledQueryResultRow]:
        return self._tx(
            "query result rows for host",
            lambda s: query_results.query_result_rows_for_host(s, query_id, host_id),
        )

    def result_count_for_query(self, query_id: int) -> int:
        return self._tx(
            "result count for query",
            lambda s: query_results.result_count_for_query(s, query_id),
        )

    def result_count_for_query_and_host(self, query_id: int, host_id: int) -> int:
        return self._tx(
            "result count for query and host",
            lambda s: query_results.result_count_for_query_and_host(s, query_id, host_id),
        )

    # --- Label membership: write side ---

    def record_label_query_executions(
        self,
        host_id: int,
        results: Mapping[int, bool | None],
        updated: datetime,
    ) -> MembershipChanges:
        """Apply a host's label results and advance its label_updated_at."""
        changes = self._tx(
            "record label query executions",
            lambda s: labels.record_label_query_executions(s, host_id, results, updated),
        )
        metrics.record_membership_changes(len(changes.upserted), len(changes.deleted))
        return changes

    def apply_label_specs(self, specs: Iterable[LabelSpec]) -> None:
        specs = list(specs)
        self._tx(
            "apply label specs",
            lambda s: labels.apply_label_specs(s, specs, self.hostname_batch_size),
        )
        logger.info(f"Applied {len(specs)} label spec(s)")

    def cleanup_orphan_label_membership(self) -> int:
        removed = self._tx(
            "cleanup orphan label membership",
            labels.cleanup_orphan_label_membership,
        )
        if removed:
            metrics.orphan_memberships_removed.inc(removed)
        return removed

    # --- Labels: read side ---

    def get_label_specs(self) -> list[LabelSpec]:
        return self._tx("get label specs", labels.get_label_specs)

    def get_label_spec(self, name: str) -> LabelSpec:
        return self._tx("get label spec", lambda s: labels.get_label_spec(s, name))

    def get_label(self, label_id: int) -> LabelOut:
        return self._tx("get label", lambda s: labels.get_label(s, label_id))

    def get_all_hosts_label(self) -> LabelOut:
        return self._tx("get all hosts label", labels.get_all_hosts_label)

    def label_ids_by_name(self, names: Sequence[str]) -> list[int]:
        if not names:
            return []
        return self._tx("label ids by name", lambda s: labels.label_ids_by_name(s, names))

    def list_labels_for_host(self, host_id: int) -> list[LabelOut]:
        return self._tx("list labels for host", lambda s: labels.list_labels_for_host(s, host_id))

    def list_hosts_in_label(self, label_id: int) -> list[HostOut]:
        return self._tx("list hosts in label", lambda s: labels.list_hosts_in_label(s, label_id))

    def count_hosts_in_label(self, label_id: int) -> int:
        return self._tx("count hosts in label", lambda s: labels.count_hosts_in_label(s, label_id))

    def list_unique_hosts_in_labels(self, label_ids: Sequence[int]) -> list[HostOut]:
        if not label_ids:
            return []
        return self._tx(
            "list unique hosts in labels",
            lambda s: labels.list_unique_hosts_in_labels(s, label_ids),
        )

    def search_labels(self, query: str = "", omit: Sequence[int] = ()) -> list[LabelOut]:
        return self._tx("search labels", lambda s: labels.search_labels(s, query, omit))

    def label_queries_for_host(self, host_id: int) -> dict[str, str]:
        return self._tx(
            "label queries for host",
            lambda s: labels.label_queries_for_host(s, host_id),
        )
