"""Firewall rules owned by a machine.

A machine owns at most two rules: an external one opening the configured
ports to the internet, and an internal one letting machines that share the
internal prefix talk to each other. Rule names are derived from the prefix
and the machine name only, so every retry of create() or remove() targets
the same rules.

Compute Engine firewalls have no labels, so ownership is recorded in the
rule description as ``<label key>=<machine name>``. Cleanup never deletes a
rule that lacks the expected key.
"""
import logging
import re
from typing import Dict, List, Optional

from google.cloud import compute_v1

from gce_machine.config import DriverConfig, parse_open_ports
from gce_machine.errors import PreconditionError
from gce_machine.gcp.compute import ComputeService, is_not_found
from gce_machine.gcp.prober import ResourceProber

logger = logging.getLogger(__name__)

EXTERNAL_FIREWALL_RULE_LABEL_KEY = "gce-machine-external-firewall-rule"
INTERNAL_FIREWALL_RULE_LABEL_KEY = "gce-machine-internal-firewall-rule"

EXTERNAL_SUFFIX = "external"
INTERNAL_SUFFIX = "internal"

PUBLIC_SOURCE_RANGES = ["0.0.0.0/0"]
INTERNAL_PROTOCOLS = ("tcp", "udp", "icmp")

_RULE_NAME = re.compile(r"^[a-z](?:[-a-z0-9]{0,61}[a-z0-9])?$")


def firewall_rule_name(prefix: str, machine_name: str, suffix: str) -> str:
    """Deterministic rule name for (prefix, machine, external|internal)."""
    return f"{prefix}-{machine_name}-{suffix}".lower()


def rule_labels(rule: Optional[compute_v1.Firewall]) -> Dict[str, str]:
    """Ownership labels stored in a rule's description."""
    labels: Dict[str, str] = {}
    description = getattr(rule, "description", "") or ""
    for item in description.split(","):
        key, sep, value = item.partition("=")
        if sep and key.strip():
            labels[key.strip()] = value.strip()
    return labels


def check_rule_name(name: str) -> None:
    """Raise PreconditionError unless ``name`` is a valid Compute Engine name.

    Names are 1-63 characters of lowercase letters, digits and hyphens,
    starting with a letter and not ending with a hyphen.
    """
    if not _RULE_NAME.match(name):
        raise PreconditionError(
            f"invalid firewall rule name {name!r}: use a shorter firewall rule prefix "
            "made of lowercase letters, digits and hyphens"
        )


def _rule_signature(rule: compute_v1.Firewall) -> tuple:
    """Fields the reconciler sets, in a comparable form.

    The API returns the network as a full URL, so only its name is compared.
    """
    return (
        rule.network.rsplit("/", 1)[-1],
        rule.direction,
        sorted((a.I_p_protocol, tuple(sorted(a.ports))) for a in rule.allowed),
        sorted(rule.source_ranges),
        sorted(rule.source_tags),
        sorted(rule.target_tags),
    )


class FirewallReconciler:
    """Ensures and cleans up the firewall rules of one machine."""

    def __init__(self, compute: ComputeService, prober: ResourceProber, machine_name: str):
        self.compute = compute
        self.prober = prober
        self.machine_name = machine_name

    def external_rule_name(self, config: DriverConfig) -> str:
        return firewall_rule_name(
            config.external_firewall_rule_prefix, self.machine_name, EXTERNAL_SUFFIX
        )

    def internal_rule_name(self, config: DriverConfig) -> str:
        return firewall_rule_name(
            config.internal_firewall_rule_prefix, self.machine_name, INTERNAL_SUFFIX
        )

    def check_rule_names(self, config: DriverConfig) -> None:
        """Check the names of the rules create() would ensure.

        Raises:
            PreconditionError: Naming the first invalid rule
        """
        if config.open_ports and config.external_firewall_rule_prefix:
            check_rule_name(self.external_rule_name(config))
        if config.internal_firewall_rule_prefix:
            check_rule_name(self.internal_rule_name(config))

    def instance_tags(self, config: DriverConfig) -> List[str]:
        """Network tags the instance needs for its rules to apply."""
        tags = list(config.tags)
        if config.open_ports and config.external_firewall_rule_prefix:
            tags.append(self.external_rule_name(config))
        if config.internal_firewall_rule_prefix:
            tags.append(config.internal_firewall_rule_prefix.lower())
        # Order-preserving de-duplication.
        return list(dict.fromkeys(tags))

    def open_public_firewall_ports(self, config: DriverConfig) -> None:
        """Ensure the external rule allows exactly ``config.open_ports``.

        Raises:
            PreconditionError: If no external prefix is configured
        """
        if not config.external_firewall_rule_prefix:
            raise PreconditionError(
                "the 'google-external-firewall-rule-prefix' flag must be provided "
                "when opening ports publicly"
            )
        name = self.external_rule_name(config)
        allowed = [
            compute_v1.Allowed(I_p_protocol=protocol, ports=ports)
            for protocol, ports in sorted(parse_open_ports(config.open_ports).items())
        ]
        rule = compute_v1.Firewall(
            name=name,
            description=f"{EXTERNAL_FIREWALL_RULE_LABEL_KEY}={self.machine_name}",
            network=self._network_url(config),
            direction="INGRESS",
            allowed=allowed,
            source_ranges=list(PUBLIC_SOURCE_RANGES),
            target_tags=[name],
        )
        self._ensure_rule(rule, EXTERNAL_FIREWALL_RULE_LABEL_KEY)

    def open_internal_firewall_ports(self, config: DriverConfig) -> None:
        """Ensure the internal rule exists when an internal prefix is set."""
        if not config.internal_firewall_rule_prefix:
            logger.debug("Not creating internal firewall rule as no prefix has been provided")
            return
        name = self.internal_rule_name(config)
        group_tag = config.internal_firewall_rule_prefix.lower()
        rule = compute_v1.Firewall(
            name=name,
            description=f"{INTERNAL_FIREWALL_RULE_LABEL_KEY}={self.machine_name}",
            network=self._network_url(config),
            direction="INGRESS",
            allowed=[compute_v1.Allowed(I_p_protocol=p) for p in INTERNAL_PROTOCOLS],
            source_tags=[group_tag],
            target_tags=[group_tag],
        )
        self._ensure_rule(rule, INTERNAL_FIREWALL_RULE_LABEL_KEY)

    def clean_up_firewall_rule(self, rule: compute_v1.Firewall, label_key: str) -> None:
        """Delete ``rule`` if it carries the ownership label ``label_key``.

        A rule without the label is left in place. A rule that disappeared
        before the delete counts as deleted.
        """
        if label_key not in rule_labels(rule):
            logger.warning(
                "firewall rule '%s' is not labelled %s, leaving it in place",
                rule.name, label_key,
            )
            return
        try:
            self.compute.delete_firewall(rule.name)
        except Exception as e:
            if not is_not_found(e):
                raise
            logger.info("firewall rule '%s' already deleted", rule.name)

    def _ensure_rule(self, rule: compute_v1.Firewall, label_key: str) -> None:
        check_rule_name(rule.name)
        probe = self.prober.firewall_rule(rule.name)
        if probe.not_found:
            self.compute.insert_firewall(rule)
            return
        probe.raise_for_error()

        existing = probe.resource
        if label_key not in rule_labels(existing):
            logger.warning(
                "firewall rule '%s' exists but is not labelled %s, not modifying it",
                rule.name, label_key,
            )
            return
        if _rule_signature(existing) == _rule_signature(rule):
            logger.debug("firewall rule '%s' is already up to date", rule.name)
            return
        self.compute.patch_firewall(rule.name, rule)

    @staticmethod
    def _network_url(config: DriverConfig) -> str:
        return f"projects/{config.project}/global/networks/{config.network}"
