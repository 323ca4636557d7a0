"""Tests for gcp/firewall.py - firewall rule reconciliation."""
import pytest
from google.cloud import compute_v1

from gce_machine.config import DriverConfig
from gce_machine.errors import PreconditionError
from gce_machine.gcp.firewall import (
    EXTERNAL_FIREWALL_RULE_LABEL_KEY,
    INTERNAL_FIREWALL_RULE_LABEL_KEY,
    FirewallReconciler,
    check_rule_name,
    firewall_rule_name,
    rule_labels,
)
from gce_machine.gcp.prober import ResourceProber


def _reconciler(compute, machine_name="web-1"):
    return FirewallReconciler(compute, ResourceProber(compute, machine_name), machine_name)


def _config(**kwargs):
    defaults = dict(
        project="test-project",
        open_ports=("8080/tcp", "53/udp"),
        external_firewall_rule_prefix="web",
    )
    defaults.update(kwargs)
    return DriverConfig(**defaults)


class TestNaming:

    def test_rule_name_is_deterministic(self):
        assert firewall_rule_name("web", "host-1", "external") == "web-host-1-external"
        assert firewall_rule_name("web", "host-1", "external") == firewall_rule_name(
            "web", "host-1", "external"
        )

    def test_rule_name_lowercased(self):
        assert firewall_rule_name("Web", "Host", "internal") == "web-host-internal"

    def test_reconciler_names(self, fake_compute):
        reconciler = _reconciler(fake_compute)
        config = _config(internal_firewall_rule_prefix="cluster")
        assert reconciler.external_rule_name(config) == "web-web-1-external"
        assert reconciler.internal_rule_name(config) == "cluster-web-1-internal"

    def test_rule_labels_parsing(self):
        rule = compute_v1.Firewall(description="a=1,b=2")
        assert rule_labels(rule) == {"a": "1", "b": "2"}
        assert rule_labels(compute_v1.Firewall()) == {}


class TestOpenPublicFirewallPorts:

    def test_creates_rule(self, fake_compute):
        _reconciler(fake_compute).open_public_firewall_ports(_config())

        rule = fake_compute.firewalls["web-web-1-external"]
        assert rule.direction == "INGRESS"
        assert list(rule.source_ranges) == ["0.0.0.0/0"]
        assert list(rule.target_tags) == ["web-web-1-external"]
        assert rule.network == "projects/test-project/global/networks/default"
        allowed = {(a.I_p_protocol, tuple(a.ports)) for a in rule.allowed}
        assert allowed == {("tcp", ("8080",)), ("udp", ("53",))}
        assert rule_labels(rule) == {EXTERNAL_FIREWALL_RULE_LABEL_KEY: "web-1"}

    def test_twice_is_idempotent(self, fake_compute):
        reconciler = _reconciler(fake_compute)
        reconciler.open_public_firewall_ports(_config())
        reconciler.open_public_firewall_ports(_config())

        assert list(fake_compute.firewalls) == ["web-web-1-external"]
        inserts = [c for c in fake_compute.calls if c[0] == "insert_firewall"]
        assert len(inserts) == 1
        assert not [c for c in fake_compute.calls if c[0] == "patch_firewall"]

    def test_changed_ports_patch_owned_rule(self, fake_compute):
        reconciler = _reconciler(fake_compute)
        reconciler.open_public_firewall_ports(_config())
        reconciler.open_public_firewall_ports(_config(open_ports=("443",)))

        rule = fake_compute.firewalls["web-web-1-external"]
        assert [(a.I_p_protocol, list(a.ports)) for a in rule.allowed] == [("tcp", ["443"])]
        assert ("patch_firewall", "web-web-1-external") in fake_compute.calls

    def test_foreign_rule_is_not_modified(self, fake_compute):
        fake_compute.firewalls["web-web-1-external"] = compute_v1.Firewall(
            name="web-web-1-external",
            description="managed by hand",
            allowed=[compute_v1.Allowed(I_p_protocol="tcp", ports=["22"])],
        )
        _reconciler(fake_compute).open_public_firewall_ports(_config())

        assert fake_compute.mutations == []

    def test_drifted_source_ranges_are_patched(self, fake_compute):
        reconciler = _reconciler(fake_compute)
        reconciler.open_public_firewall_ports(_config())
        fake_compute.firewalls["web-web-1-external"].source_ranges = ["10.0.0.0/8"]

        reconciler.open_public_firewall_ports(_config())

        assert ("patch_firewall", "web-web-1-external") in fake_compute.calls
        assert list(fake_compute.firewalls["web-web-1-external"].source_ranges) == ["0.0.0.0/0"]

    def test_drifted_target_tags_are_patched(self, fake_compute):
        reconciler = _reconciler(fake_compute)
        reconciler.open_public_firewall_ports(_config())
        fake_compute.firewalls["web-web-1-external"].target_tags = ["something-else"]

        reconciler.open_public_firewall_ports(_config())

        assert ("patch_firewall", "web-web-1-external") in fake_compute.calls

    def test_full_network_url_is_not_drift(self, fake_compute):
        reconciler = _reconciler(fake_compute)
        reconciler.open_public_firewall_ports(_config())
        fake_compute.firewalls["web-web-1-external"].network = (
            "https://www.googleapis.com/compute/v1/projects/test-project/global/networks/default"
        )

        reconciler.open_public_firewall_ports(_config())

        assert not [c for c in fake_compute.calls if c[0] == "patch_firewall"]

    def test_overlong_rule_name_fails_before_any_call(self, fake_compute):
        with pytest.raises(PreconditionError) as exc_info:
            _reconciler(fake_compute).open_public_firewall_ports(
                _config(external_firewall_rule_prefix="x" * 60)
            )
        assert "x" * 60 in str(exc_info.value)
        assert fake_compute.calls == []

    def test_empty_prefix_fails_before_any_call(self, fake_compute):
        with pytest.raises(PreconditionError):
            _reconciler(fake_compute).open_public_firewall_ports(
                _config(external_firewall_rule_prefix="")
            )
        assert fake_compute.calls == []


class TestOpenInternalFirewallPorts:

    def test_no_prefix_is_noop(self, fake_compute, caplog):
        with caplog.at_level("DEBUG", logger="gce_machine.gcp.firewall"):
            _reconciler(fake_compute).open_internal_firewall_ports(_config())
        assert fake_compute.calls == []
        assert "no prefix" in caplog.text

    def test_creates_group_rule(self, fake_compute):
        _reconciler(fake_compute).open_internal_firewall_ports(
            _config(internal_firewall_rule_prefix="cluster")
        )
        rule = fake_compute.firewalls["cluster-web-1-internal"]
        assert list(rule.source_tags) == ["cluster"]
        assert list(rule.target_tags) == ["cluster"]
        assert {a.I_p_protocol for a in rule.allowed} == {"tcp", "udp", "icmp"}
        assert INTERNAL_FIREWALL_RULE_LABEL_KEY in rule_labels(rule)


class TestInstanceTags:

    def test_tags_include_rule_targets(self, fake_compute):
        config = _config(tags=("http", "web-web-1-external"), internal_firewall_rule_prefix="cluster")
        tags = _reconciler(fake_compute).instance_tags(config)
        assert tags == ["http", "web-web-1-external", "cluster"]

    def test_no_ports_no_external_tag(self, fake_compute):
        config = _config(open_ports=())
        assert _reconciler(fake_compute).instance_tags(config) == []


class TestCleanUpFirewallRule:

    def _owned(self, name, key=EXTERNAL_FIREWALL_RULE_LABEL_KEY):
        return compute_v1.Firewall(name=name, description=f"{key}=web-1")

    def test_deletes_owned_rule(self, fake_compute):
        rule = self._owned("web-web-1-external")
        fake_compute.firewalls[rule.name] = rule
        _reconciler(fake_compute).clean_up_firewall_rule(rule, EXTERNAL_FIREWALL_RULE_LABEL_KEY)
        assert fake_compute.firewalls == {}

    def test_never_deletes_unlabelled_rule(self, fake_compute):
        rule = compute_v1.Firewall(name="web-web-1-external", description="")
        fake_compute.firewalls[rule.name] = rule
        _reconciler(fake_compute).clean_up_firewall_rule(rule, EXTERNAL_FIREWALL_RULE_LABEL_KEY)
        assert "web-web-1-external" in fake_compute.firewalls
        assert fake_compute.mutations == []

    def test_never_deletes_rule_with_other_label(self, fake_compute):
        rule = self._owned("web-web-1-external", key=INTERNAL_FIREWALL_RULE_LABEL_KEY)
        fake_compute.firewalls[rule.name] = rule
        _reconciler(fake_compute).clean_up_firewall_rule(rule, EXTERNAL_FIREWALL_RULE_LABEL_KEY)
        assert "web-web-1-external" in fake_compute.firewalls

    def test_already_deleted_is_success(self, fake_compute):
        rule = self._owned("web-web-1-external")
        _reconciler(fake_compute).clean_up_firewall_rule(rule, EXTERNAL_FIREWALL_RULE_LABEL_KEY)

    def test_other_delete_errors_propagate(self, fake_compute):
        from google.api_core.exceptions import Forbidden

        rule = self._owned("web-web-1-external")
        fake_compute.firewalls[rule.name] = rule
        fake_compute.failures["delete_firewall"] = Forbidden("denied")
        with pytest.raises(Forbidden):
            _reconciler(fake_compute).clean_up_firewall_rule(rule, EXTERNAL_FIREWALL_RULE_LABEL_KEY)


class TestRuleNameChecks:

    def test_valid_names(self):
        check_rule_name("web-web-1-external")
        check_rule_name("a")

    @pytest.mark.parametrize("name", [
        "x" * 64,
        "1web-host-external",
        "web_host-external",
        "web-host-",
        "",
    ])
    def test_invalid_names(self, name):
        with pytest.raises(PreconditionError):
            check_rule_name(name)

    def test_check_rule_names_covers_both_rules(self, fake_compute):
        reconciler = _reconciler(fake_compute)
        reconciler.check_rule_names(_config(internal_firewall_rule_prefix="cluster"))

        with pytest.raises(PreconditionError) as exc_info:
            reconciler.check_rule_names(_config(internal_firewall_rule_prefix="team_a"))
        assert "team_a-web-1-internal" in str(exc_info.value)

    def test_external_name_ignored_without_ports(self, fake_compute):
        _reconciler(fake_compute).check_rule_names(
            _config(open_ports=(), external_firewall_rule_prefix="bad_prefix")
        )
