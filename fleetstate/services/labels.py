"""Label membership storage.

Write side:
- record_label_query_executions: apply one host's dynamic label results
- apply_label_specs: bulk import of label definitions and manual host lists
- cleanup_orphan_label_membership: drop rows whose label or host is gone

Read side: label specs, label/host listings and label search.

Concurrency: thousands of hosts report label results at once and their
transactions touch overlapping label rows. Every statement here visits
label ids in ascending order so all writers acquire row locks in the same
order, and each set of changes is issued as one batched statement.

All functions run inside the caller's session/transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from sqlalchemy import Integer, case, delete, func, literal, or_, select, update
from sqlalchemy.orm import Session

from fleetstate import models
from fleetstate.db import dialect_insert
from fleetstate.enums import ALL_HOSTS_LABEL_NAME, LabelMembershipType, LabelType
from fleetstate.errors import NotFoundError
from fleetstate.schemas import HostOut, LabelOut, LabelSpec

logger = logging.getLogger(__name__)

# Default hostnames per INSERT ... SELECT; well under the bind parameter ceiling
DEFAULT_HOSTNAME_BATCH_SIZE = 50000


@dataclass
class MembershipChanges:
    """Label ids upserted and deleted by one reconciliation."""
    upserted: list[int]
    deleted: list[int]


# =============================================================================
# Membership reconciliation
# =============================================================================


def partition_label_results(results: Mapping[int, bool | None]) -> tuple[list[int], list[int]]:
    """Split label results into (insert ids, delete ids), both ascending.

    True means the host matches; False and None (query failed or was
    skipped) both mean it does not.
    """
    inserts: list[int] = []
    removes: list[int] = []
    for label_id in sorted(results):
        if results[label_id] is True:
            inserts.append(label_id)
        else:
            removes.append(label_id)
    return inserts, removes


def _reconcilable_labels(session: Session, label_ids: Sequence[int]) -> dict[int, bool]:
    """Map each existing label id to whether reconciliation may touch it."""
    if not label_ids:
        return {}
    rows = session.execute(
        select(
            models.Label.id,
            models.Label.label_type,
            models.Label.label_membership_type,
        )
        .where(models.Label.id.in_(label_ids))
        .order_by(models.Label.id)
    )
    return {
        label_id: (
            label_type != LabelType.BUILTIN.value
            and membership_type == LabelMembershipType.DYNAMIC.value
        )
        for label_id, label_type, membership_type in rows
    }


def _upsert_memberships(
    session: Session,
    host_id: int,
    label_ids: Sequence[int],
    updated: datetime,
) -> None:
    """Insert (label, host) rows or refresh updated_at, in one statement."""
    stmt = dialect_insert(session, models.LabelMembership.__table__).values(
        [
            {"updated_at": updated, "label_id": label_id, "host_id": host_id}
            for label_id in label_ids
        ]
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["label_id", "host_id"],
        set_={"updated_at": stmt.excluded.updated_at},
    )
    session.execute(stmt)


def _delete_memberships(session: Session, host_id: int, label_ids: Sequence[int]) -> None:
    session.execute(
        delete(models.LabelMembership)
        .where(
            models.LabelMembership.host_id == host_id,
            models.LabelMembership.label_id.in_(label_ids),
        )
        .execution_options(synchronize_session=False)
    )


def _mark_host_label_updated(session: Session, host_id: int, updated: datetime) -> None:
    result = session.execute(
        update(models.Host)
        .where(models.Host.id == host_id)
        .values(label_updated_at=updated)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFoundError("host", host_id, "record label query executions")


def record_label_query_executions(
    session: Session,
    host_id: int,
    results: Mapping[int, bool | None],
    updated: datetime,
) -> MembershipChanges:
    """Apply one host's label query results and stamp ``label_updated_at``.

    Labels missing from ``results`` are left untouched. Built-in and manual
    labels are never changed here. A True result for an unknown label
    raises NotFoundError; a False result for one is a harmless delete.
    Running the same input twice yields the same memberships.
    """
    inserts, removes = partition_label_results(results)
    reconcilable = _reconcilable_labels(session, inserts + removes)

    missing = [label_id for label_id in inserts if label_id not in reconcilable]
    if missing:
        raise NotFoundError("label", missing[0], "record label query executions")

    inserts = [label_id for label_id in inserts if reconcilable[label_id]]
    removes = [label_id for label_id in removes if reconcilable.get(label_id, True)]

    if inserts:
        _upsert_memberships(session, host_id, inserts, updated)
    if removes:
        _delete_memberships(session, host_id, removes)
    _mark_host_label_updated(session, host_id, updated)

    logger.debug(
        f"Host {host_id} label results recorded: "
        f"{len(inserts)} upserted, {len(removes)} deleted"
    )
    return MembershipChanges(upserted=inserts, deleted=removes)


# =============================================================================
# Bulk label spec import
# =============================================================================


def batch_hostnames(hostnames: Sequence[str], batch_size: int = DEFAULT_HOSTNAME_BATCH_SIZE) -> list[list[str]]:
    """Split hostnames into consecutive chunks of ``batch_size``.

    The last chunk may be short. Always returns at least one chunk, so an
    empty input yields ``[[]]``.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    hostnames = list(hostnames)
    batches = [hostnames[i:i + batch_size] for i in range(0, len(hostnames), batch_size)]
    return batches or [[]]


def _upsert_label(session: Session, spec: LabelSpec) -> None:
    stmt = dialect_insert(session, models.Label.__table__).values(
        name=spec.name,
        description=spec.description,
        query=spec.query,
        platform=spec.platform,
        label_type=spec.label_type.value,
        label_membership_type=spec.label_membership_type.value,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["name"],
        set_={
            "description": stmt.excluded.description,
            "query": stmt.excluded.query,
            "platform": stmt.excluded.platform,
            "label_type": stmt.excluded.label_type,
            "label_membership_type": stmt.excluded.label_membership_type,
            "updated_at": func.now(),
        },
    )
    session.execute(stmt)


def apply_label_specs(
    session: Session,
    specs: Iterable[LabelSpec],
    batch_size: int = DEFAULT_HOSTNAME_BATCH_SIZE,
) -> None:
    """Create or update labels from specs, replacing manual host lists.

    Manual, non-builtin labels get their membership cleared and rebuilt
    from ``spec.hosts``. Hostnames that match no host are ignored. A host
    named in two chunks is inserted once.
    """
    for spec in specs:
        if not spec.name:
            raise ValueError("label name must not be empty")

        _upsert_label(session, spec)

        if (
            spec.label_type == LabelType.BUILTIN
            or spec.label_membership_type != LabelMembershipType.MANUAL
        ):
            continue

        label_id = session.execute(
            select(models.Label.id).where(models.Label.name == spec.name)
        ).scalar_one()

        session.execute(
            delete(models.LabelMembership)
            .where(models.LabelMembership.label_id == label_id)
            .execution_options(synchronize_session=False)
        )

        if not spec.hosts:
            continue

        for hostnames in batch_hostnames(spec.hosts, batch_size):
            host_ids = select(literal(label_id, Integer), models.Host.id).where(
                models.Host.hostname.in_(hostnames)
            )
            stmt = (
                dialect_insert(session, models.LabelMembership.__table__)
                .from_select(["label_id", "host_id"], host_ids)
                .on_conflict_do_nothing()
            )
            session.execute(stmt)

        logger.info(f"Applied manual label {spec.name!r} with {len(spec.hosts)} hostname(s)")


# =============================================================================
# Read side
# =============================================================================


def _host_count_column():
    """Correlated count of a label's members that are still existing hosts."""
    return (
        select(func.count())
        .select_from(models.LabelMembership)
        .join(models.Host, models.Host.id == models.LabelMembership.host_id)
        .where(models.LabelMembership.label_id == models.Label.id)
        .correlate(models.Label)
        .scalar_subquery()
        .label("host_count")
    )


def _label_out(label: models.Label, host_count: int | None = None) -> LabelOut:
    out = LabelOut.model_validate(label)
    if host_count is not None:
        out.host_count = host_count
    return out


def _label_hostnames(session: Session, label_id: int) -> list[str]:
    stmt = (
        select(models.Host.hostname)
        .join(models.LabelMembership, models.LabelMembership.host_id == models.Host.id)
        .where(models.LabelMembership.label_id == label_id)
        .order_by(models.Host.hostname)
    )
    return list(session.scalars(stmt))


def _to_spec(session: Session, label: models.Label) -> LabelSpec:
    spec = LabelSpec(
        name=label.name,
        description=label.description,
        query=label.query,
        platform=label.platform,
        label_type=label.label_type,
        label_membership_type=label.label_membership_type,
    )
    if (
        spec.label_type != LabelType.BUILTIN
        and spec.label_membership_type == LabelMembershipType.MANUAL
    ):
        spec.hosts = _label_hostnames(session, label.id)
    return spec


def get_label_specs(session: Session) -> list[LabelSpec]:
    labels = session.scalars(select(models.Label).order_by(models.Label.id))
    return [_to_spec(session, label) for label in labels]


def get_label_spec(session: Session, name: str) -> LabelSpec:
    label = session.scalars(select(models.Label).where(models.Label.name == name)).first()
    if label is None:
        raise NotFoundError("label", name, "get label spec")
    return _to_spec(session, label)


def get_label(session: Session, label_id: int) -> LabelOut:
    row = session.execute(
        select(models.Label, _host_count_column()).where(models.Label.id == label_id)
    ).first()
    if row is None:
        raise NotFoundError("label", label_id, "get label")
    return _label_out(row[0], row[1])


def get_all_hosts_label(session: Session) -> LabelOut:
    """The built-in label every host belongs to."""
    row = session.execute(
        select(models.Label, _host_count_column())
        .where(
            models.Label.label_type == LabelType.BUILTIN.value,
            models.Label.name == ALL_HOSTS_LABEL_NAME,
        )
        .limit(1)
    ).first()
    if row is None:
        raise NotFoundError("label", ALL_HOSTS_LABEL_NAME, "get all hosts label")
    return _label_out(row[0], row[1])


def label_ids_by_name(session: Session, names: Sequence[str]) -> list[int]:
    if not names:
        return []
    stmt = select(models.Label.id).where(models.Label.name.in_(list(names))).order_by(models.Label.id)
    return list(session.scalars(stmt))


def list_labels_for_host(session: Session, host_id: int) -> list[LabelOut]:
    stmt = (
        select(models.Label)
        .join(models.LabelMembership, models.LabelMembership.label_id == models.Label.id)
        .where(models.LabelMembership.host_id == host_id)
        .order_by(models.Label.id)
    )
    return [_label_out(label) for label in session.scalars(stmt)]


def list_hosts_in_label(session: Session, label_id: int) -> list[HostOut]:
    stmt = (
        select(models.Host)
        .join(models.LabelMembership, models.LabelMembership.host_id == models.Host.id)
        .where(models.LabelMembership.label_id == label_id)
        .order_by(models.Host.id)
    )
    return [HostOut.model_validate(host) for host in session.scalars(stmt)]


def count_hosts_in_label(session: Session, label_id: int) -> int:
    stmt = (
        select(func.count())
        .select_from(models.LabelMembership)
        .join(models.Host, models.Host.id == models.LabelMembership.host_id)
        .where(models.LabelMembership.label_id == label_id)
    )
    return session.execute(stmt).scalar_one()


def list_unique_hosts_in_labels(session: Session, label_ids: Sequence[int]) -> list[HostOut]:
    if not label_ids:
        return []
    member_ids = select(models.LabelMembership.host_id).where(
        models.LabelMembership.label_id.in_(list(label_ids))
    )
    stmt = select(models.Host).where(models.Host.id.in_(member_ids)).order_by(models.Host.id)
    return [HostOut.model_validate(host) for host in session.scalars(stmt)]


def search_labels(session: Session, query: str = "", omit: Sequence[int] = ()) -> list[LabelOut]:
    """Find labels by case-insensitive name substring.

    Built-in labels sort first, then by id. The built-in "All Hosts" label
    is always part of the result unless its id is in ``omit``. A blank
    query lists every label.
    """
    builtin_first = case((models.Label.label_type == LabelType.BUILTIN.value, 0), else_=1)
    stmt = (
        select(models.Label, _host_count_column())
        .order_by(builtin_first, models.Label.id)
    )
    term = query.strip().lower()
    if term:
        stmt = stmt.where(func.lower(models.Label.name).contains(term, autoescape=True))
    if omit:
        stmt = stmt.where(models.Label.id.not_in(list(omit)))

    labels = [_label_out(label, count) for label, count in session.execute(stmt)]

    all_hosts = get_all_hosts_label(session)
    if all_hosts.id in omit or any(label.id == all_hosts.id for label in labels):
        return labels
    return labels + [all_hosts]


def platform_for_host(host: models.Host) -> str:
    """Label platform a host's queries target; CentOS reports as rhel."""
    if host.platform != "rhel":
        return host.platform
    if "centos" in (host.os_version or "").lower():
        return "centos"
    return host.platform


def label_queries_for_host(session: Session, host_id: int) -> dict[str, str]:
    """Dynamic label queries the host's agent should evaluate, keyed by label id."""
    host = session.get(models.Host, host_id)
    if host is None:
        raise NotFoundError("host", host_id, "label queries for host")
    platform = platform_for_host(host)
    stmt = (
        select(models.Label.id, models.Label.query)
        .where(
            or_(models.Label.platform == platform, models.Label.platform == ""),
            models.Label.label_membership_type == LabelMembershipType.DYNAMIC.value,
            models.Label.label_type != LabelType.BUILTIN.value,
        )
        .order_by(models.Label.id)
    )
    return {str(label_id): label_query for label_id, label_query in session.execute(stmt)}


# =============================================================================
# Maintenance
# =============================================================================


def cleanup_orphan_label_membership(session: Session) -> int:
    """Delete membership rows whose label or host no longer exists."""
    label_exists = (
        select(models.Label.id)
        .where(models.Label.id == models.LabelMembership.label_id)
        .exists()
    )
    host_exists = (
        select(models.Host.id)
        .where(models.Host.id == models.LabelMembership.host_id)
        .exists()
    )
    result = session.execute(
        delete(models.LabelMembership)
        .where(or_(~label_exists, ~host_exists))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
