"""Tests for bulk label spec import and spec reads."""
from __future__ import annotations

import pytest

from fleetstate.datastore import Datastore
from fleetstate.enums import LabelMembershipType, LabelType
from fleetstate.errors import NotFoundError
from fleetstate.schemas import LabelSpec
from fleetstate.services.labels import batch_hostnames


def manual_spec(name: str, hosts: list[str], **kwargs) -> LabelSpec:
    return LabelSpec(
        name=name,
        label_membership_type=LabelMembershipType.MANUAL,
        hosts=hosts,
        **kwargs,
    )


@pytest.fixture
def hosts(make_host):
    return {name: make_host(name) for name in ("h1", "h2", "h3", "h4", "h5")}


class TestBatchHostnames:
    def test_even_split(self):
        assert batch_hostnames(["a", "b", "c", "d"], 2) == [["a", "b"], ["c", "d"]]

    def test_short_last_batch(self):
        assert batch_hostnames(["a", "b", "c"], 2) == [["a", "b"], ["c"]]

    def test_batch_larger_than_input(self):
        assert batch_hostnames(["a", "b"], 10) == [["a", "b"]]

    def test_empty_input_yields_one_empty_batch(self):
        assert batch_hostnames([], 3) == [[]]

    def test_order_preserved_with_duplicates(self):
        assert batch_hostnames(["b", "a", "b"], 1) == [["b"], ["a"], ["b"]]

    @pytest.mark.parametrize("size", [0, -5])
    def test_invalid_batch_size(self, size):
        with pytest.raises(ValueError):
            batch_hostnames(["a"], size)


class TestApplyLabelSpecs:
    def test_creates_dynamic_label(self, datastore):
        datastore.apply_label_specs([
            LabelSpec(name="macs", query="SELECT 1 FROM os_version WHERE platform = 'darwin'", platform="darwin"),
        ])

        spec = datastore.get_label_spec("macs")
        assert spec.platform == "darwin"
        assert spec.label_membership_type == LabelMembershipType.DYNAMIC
        assert spec.hosts == []

    def test_updates_existing_label_in_place(self, datastore):
        datastore.apply_label_specs([LabelSpec(name="macs", query="SELECT 1")])
        first_id = datastore.label_ids_by_name(["macs"])

        datastore.apply_label_specs([LabelSpec(name="macs", query="SELECT 2", description="updated")])

        assert datastore.label_ids_by_name(["macs"]) == first_id
        spec = datastore.get_label_spec("macs")
        assert spec.query == "SELECT 2"
        assert spec.description == "updated"

    def test_manual_hosts_across_several_batches(self, datastore, hosts, membership_pairs):
        # Batch size is 2 in the datastore fixture, so this spans three INSERTs
        datastore.apply_label_specs([manual_spec("pets", ["h1", "h2", "h3", "h4", "h5"])])

        label_id = datastore.label_ids_by_name(["pets"])[0]
        assert {host_id for _, host_id in membership_pairs()} == {h.id for h in hosts.values()}
        assert datastore.count_hosts_in_label(label_id) == 5

    def test_duplicate_hostnames_inserted_once(self, datastore, hosts):
        datastore.apply_label_specs([manual_spec("pets", ["h1", "h2", "h1", "h3", "h2"])])

        label_id = datastore.label_ids_by_name(["pets"])[0]
        assert datastore.count_hosts_in_label(label_id) == 3

    def test_unknown_hostnames_are_ignored(self, datastore, hosts):
        datastore.apply_label_specs([manual_spec("pets", ["h1", "no-such-host"])])

        assert datastore.get_label_spec("pets").hosts == ["h1"]

    def test_reapply_replaces_host_list(self, datastore, hosts):
        datastore.apply_label_specs([manual_spec("pets", ["h1", "h2", "h3"])])

        datastore.apply_label_specs([manual_spec("pets", ["h4"])])

        assert datastore.get_label_spec("pets").hosts == ["h4"]

    def test_empty_host_list_clears_membership(self, datastore, hosts):
        datastore.apply_label_specs([manual_spec("pets", ["h1", "h2"])])

        datastore.apply_label_specs([manual_spec("pets", [])])

        label_id = datastore.label_ids_by_name(["pets"])[0]
        assert datastore.count_hosts_in_label(label_id) == 0

    def test_dynamic_spec_leaves_membership_alone(self, datastore, hosts, make_label, mock_time):
        label = make_label("dyn", label_id=10)
        datastore.record_label_query_executions(hosts["h1"].id, {label.id: True}, mock_time)

        datastore.apply_label_specs([LabelSpec(name="dyn", query="SELECT 2", hosts=["h2"])])

        assert [h.hostname for h in datastore.list_hosts_in_label(label.id)] == ["h1"]

    def test_builtin_spec_never_gets_manual_hosts(self, datastore, hosts):
        datastore.apply_label_specs([
            LabelSpec(
                name="All Hosts",
                label_type=LabelType.BUILTIN,
                label_membership_type=LabelMembershipType.MANUAL,
                hosts=["h1"],
            ),
        ])

        assert datastore.get_all_hosts_label().host_count == 0

    def test_empty_name_rejected_and_nothing_written(self, datastore, hosts):
        with pytest.raises(ValueError):
            datastore.apply_label_specs([
                manual_spec("pets", ["h1"]),
                LabelSpec(name=""),
            ])

        with pytest.raises(NotFoundError):
            datastore.get_label_spec("pets")


class TestGetLabelSpecs:
    def test_round_trips_specs(self, datastore, hosts):
        specs = [
            LabelSpec(name="linux", query="SELECT 1", platform="ubuntu", description="Linux hosts"),
            manual_spec("pets", ["h3", "h1"], description="hand-picked"),
        ]
        datastore.apply_label_specs(specs)

        result = datastore.get_label_specs()

        assert [s.name for s in result] == ["linux", "pets"]
        assert result[0].description == "Linux hosts"
        assert result[0].hosts == []
        # Hostnames come back sorted
        assert result[1].hosts == ["h1", "h3"]

    def test_get_label_spec_unknown(self, datastore):
        with pytest.raises(NotFoundError) as exc_info:
            datastore.get_label_spec("missing")

        assert exc_info.value.entity == "label"
        assert exc_info.value.identifier == "missing"


def test_zero_batch_size_is_rejected(session_factory, hosts):
    datastore = Datastore(session_factory=session_factory, hostname_batch_size=0)

    with pytest.raises(ValueError):
        datastore.apply_label_specs([manual_spec("pets", ["h1"])])
