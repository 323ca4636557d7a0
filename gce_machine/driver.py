"""Lifecycle driver for a single Compute Engine host.

GCEDriver keeps no lifecycle state of its own: every operation probes the
remote instance, disk and firewall rules and acts on what it finds. The
only cached value is the last resolved IP address.
"""
import json
import logging
import os
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError

from gce_machine.config import DEFAULT_USER, DriverConfig, runtime_auth
from gce_machine.errors import (
    HostNotRunningError,
    InstanceExistsError,
    InstanceNotFoundError,
    PreconditionError,
    RemoveError,
)
from gce_machine.gcp.compute import (
    ComputeService,
    credentials_from_encoded_json,
    is_not_found,
)
from gce_machine.gcp.firewall import (
    EXTERNAL_FIREWALL_RULE_LABEL_KEY,
    INTERNAL_FIREWALL_RULE_LABEL_KEY,
    FirewallReconciler,
)
from gce_machine.gcp.prober import ResourceProber
from gce_machine.gcp.vm import build_instance, instance_ip, merge_ssh_key_metadata
from gce_machine.ssh import generate_ssh_key, read_public_key
from gce_machine.state import State, infer_state

logger = logging.getLogger(__name__)

DRIVER_NAME = "google"
DOCKER_PORT = 2376
SSH_PORT = 22


class GCEDriver:
    """Creates, starts, stops and removes one Compute Engine host.

    Calls are expected to be serialized by the caller: the driver holds no
    locks and each operation runs to completion before the next one.

    Attributes:
        machine_name: Instance name, also used to derive disk and rule names
        store_path: Root directory holding machines/<name>/ (SSH keys)
        config: Driver configuration snapshot
        ssh_port: SSH port of the host
        ip_address: Last resolved address, "" when unknown
    """

    def __init__(
        self,
        machine_name: str,
        store_path: str,
        config: Optional[DriverConfig] = None,
        compute: Optional[ComputeService] = None,
    ):
        self.machine_name = machine_name
        self.store_path = store_path
        self.config = config or DriverConfig()
        self.ssh_port = SSH_PORT
        self.ip_address = ""
        self._compute = compute
        self._prober: Optional[ResourceProber] = None
        self._firewall: Optional[FirewallReconciler] = None

    @property
    def compute(self) -> ComputeService:
        """Lazy-initialize the Compute Engine service."""
        if self._compute is None:
            self._compute = ComputeService(
                project=self.config.project,
                zone=self.config.zone,
                credentials=credentials_from_encoded_json(self.config.auth),
            )
        return self._compute

    @property
    def prober(self) -> ResourceProber:
        if self._prober is None:
            self._prober = ResourceProber(self.compute, self.machine_name)
        return self._prober

    @property
    def firewall(self) -> FirewallReconciler:
        if self._firewall is None:
            self._firewall = FirewallReconciler(self.compute, self.prober, self.machine_name)
        return self._firewall

    def driver_name(self) -> str:
        return DRIVER_NAME

    def get_ssh_key_path(self) -> str:
        return os.path.join(self.store_path, "machines", self.machine_name, "id_rsa")

    def get_ssh_username(self) -> str:
        return self.config.username or DEFAULT_USER

    def get_ssh_hostname(self) -> str:
        return self.get_ip()

    def pre_create_check(self) -> None:
        """Validate that create() can run. Mutates no remote state.

        Checks the firewall rule names, the project (which also checks the
        credentials) and the instance against use-existing mode, then inlines
        the user-data file.

        Raises:
            PreconditionError: If any check fails
        """
        self.firewall.check_rule_names(self.config)

        logger.info("Check that the project exists")
        try:
            self.compute.get_project()
        except (GoogleAPIError, GoogleAuthError) as e:
            raise PreconditionError(f"Project with ID {self.config.project!r} not found. {e}")

        logger.info("Check if the instance already exists")
        probe = self.prober.instance()
        probe.raise_for_error()
        if self.config.use_existing:
            if not probe.exists:
                raise InstanceNotFoundError(self.machine_name, self.config.zone)
        elif probe.exists:
            raise InstanceExistsError(self.machine_name, self.config.zone)

        if self.config.userdata:
            try:
                with open(self.config.userdata, "r") as f:
                    contents = f.read()
            except OSError as e:
                raise PreconditionError(
                    f"cannot read userdata file {self.config.userdata}: {e}"
                )
            self.config = replace(self.config, userdata=contents)

    def create(self) -> None:
        """Provision firewall rules, then create or adopt the instance.

        Rules go first so the instance never runs without its ingress
        policy.
        """
        logger.info("Generating SSH Key")
        generate_ssh_key(self.get_ssh_key_path())

        logger.info("Creating host...")
        self.firewall.check_rule_names(self.config)
        if self.config.open_ports:
            if not self.config.external_firewall_rule_prefix:
                raise PreconditionError(
                    "the 'google-external-firewall-rule-prefix' flag must be provided "
                    "when opening ports publicly"
                )
            self.firewall.open_public_firewall_ports(self.config)

        self.firewall.open_internal_firewall_ports(self.config)

        if self.config.use_existing:
            self._configure_instance()
        else:
            self._create_instance()

        try:
            self.ip_address = self.get_ip()
        except HostNotRunningError:
            self.ip_address = ""

    def _create_instance(self) -> None:
        public_key = read_public_key(self.get_ssh_key_path())

        disk_probe = self.prober.disk()
        disk_probe.raise_for_error()
        if disk_probe.exists:
            logger.info("Reusing existing disk %s", self.prober.disk_name)

        instance = build_instance(
            self.config,
            machine_name=self.machine_name,
            disk_name=self.prober.disk_name,
            public_key=public_key,
            tags=self.firewall.instance_tags(self.config),
            existing_disk=disk_probe.resource,
        )
        self.compute.insert_instance(instance)

    def _configure_instance(self) -> None:
        """Install the SSH key, firewall tags and labels on an existing instance."""
        probe = self.prober.instance()
        if probe.not_found:
            raise InstanceNotFoundError(self.machine_name, self.config.zone)
        probe.raise_for_error()
        instance = probe.resource

        logger.info("Uploading SSH key to instance %s", self.machine_name)
        public_key = read_public_key(self.get_ssh_key_path())
        metadata = merge_ssh_key_metadata(
            instance.metadata, self.get_ssh_username(), public_key
        )
        self.compute.set_metadata(self.machine_name, metadata)

        current_tags = list(instance.tags.items)
        tags = list(dict.fromkeys(current_tags + self.firewall.instance_tags(self.config)))
        if tags != current_tags:
            self.compute.set_tags(self.machine_name, tags, instance.tags.fingerprint)

        if self.config.labels:
            labels = dict(instance.labels)
            labels.update(self.config.labels)
            self.compute.set_labels(self.machine_name, labels, instance.label_fingerprint)

    def get_state(self) -> State:
        """Derive the host state from the instance and disk probes."""
        probe = self.prober.instance()
        if probe.error is not None and not probe.not_found:
            logger.warning("failed to get instance %s: %s", self.machine_name, probe.error)

        disk = None
        if probe.resource is None and not probe.not_found:
            disk = self.prober.disk().resource
        return infer_state(probe.resource, probe.error, disk)

    def start(self) -> None:
        """Start the instance, recreating it if only its disk is left."""
        probe = self.prober.instance()
        probe.raise_for_error()

        if probe.exists:
            self.compute.start_instance(self.machine_name)
        else:
            self.create()

        self.ip_address = self.get_ip()

    def stop(self) -> None:
        self.compute.stop_instance(self.machine_name)
        self.ip_address = ""

    def restart(self) -> None:
        self.stop()
        self.start()

    def kill(self) -> None:
        """Same as stop(): Compute Engine has no separate power-off here."""
        self.stop()

    def remove(self) -> None:
        """Delete the instance, its disk and its firewall rules.

        Every step runs even if an earlier one failed. Resources that are
        already gone are skipped.

        Raises:
            RemoveError: Listing every step that failed
        """
        failures: List[Tuple[str, Exception]] = []
        where = f"in zone {self.config.zone!r} of project {self.config.project!r}"

        self._remove_step(
            failures,
            f"deleting instance {self.machine_name!r} {where}",
            lambda: self.compute.delete_instance(self.machine_name),
            "Remote instance does not exist, proceeding with removing local reference",
        )
        self._remove_step(
            failures,
            f"deleting disk {self.prober.disk_name!r} {where}",
            lambda: self.compute.delete_disk(self.prober.disk_name),
            "Remote disk does not exist, proceeding",
        )

        if self.config.open_ports:
            self._remove_firewall_rule(
                failures,
                "external",
                self.firewall.external_rule_name(self.config),
                EXTERNAL_FIREWALL_RULE_LABEL_KEY,
            )
        if self.config.internal_firewall_rule_prefix:
            self._remove_firewall_rule(
                failures,
                "internal",
                self.firewall.internal_rule_name(self.config),
                INTERNAL_FIREWALL_RULE_LABEL_KEY,
            )

        if failures:
            raise RemoveError(failures)

    def _remove_step(self, failures, step: str, action, not_found_message: str) -> None:
        try:
            action()
        except Exception as e:
            if is_not_found(e):
                logger.info(not_found_message)
                return
            logger.error("failed %s: %s", step, e)
            failures.append((step, e))

    def _remove_firewall_rule(self, failures, kind: str, name: str, label_key: str) -> None:
        probe = self.prober.firewall_rule(name)
        if probe.not_found:
            logger.info("%s firewall rule '%s' does not exist, nothing to do", kind, name)
            return
        if probe.error is not None:
            logger.warning(
                "failed to get %s firewall rule '%s' while deleting VM: %s", kind, name, probe.error
            )
            failures.append((f"getting {kind} firewall rule {name!r}", probe.error))
            return
        try:
            self.firewall.clean_up_firewall_rule(probe.resource, label_key)
        except Exception as e:
            logger.error("failed remove %s firewall rule '%s': %s", kind, name, e)
            failures.append((f"deleting {kind} firewall rule {name!r}", e))

    def get_ip(self) -> str:
        """Resolve the host address from the instance.

        Raises:
            HostNotRunningError: If the instance has no address
        """
        probe = self.prober.instance()
        if probe.error is not None:
            raise probe.error
        ip = instance_ip(probe.resource, self.config.use_internal_ip)
        if not ip:
            raise HostNotRunningError(self.machine_name)
        return ip

    def get_url(self) -> str:
        """Docker daemon URL of the host."""
        ip = self.get_ip()
        host = f"[{ip}]" if ":" in ip else ip
        return f"tcp://{host}:{DOCKER_PORT}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "driver": DRIVER_NAME,
            "machine_name": self.machine_name,
            "store_path": self.store_path,
            "ssh_port": self.ssh_port,
            "ip_address": self.ip_address,
            "config": self.config.to_dict(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)

    @classmethod
    def from_json(
        cls,
        data: str,
        argv: Optional[List[str]] = None,
        environ: Optional[Mapping[str, str]] = None,
        compute: Optional[ComputeService] = None,
        live_auth: Optional[str] = None,
    ) -> "GCEDriver":
        """Rebuild a driver from to_json() output.

        The credentials stored in ``data`` may be stale, so when the running
        process was given credentials those replace the stored ones: first
        ``live_auth`` (an already parsed flag value), then the flag in
        ``argv``, then the environment variable. No other field is
        overridden.
        """
        raw = json.loads(data)
        config = DriverConfig.from_dict(raw.get("config", {}))
        auth = live_auth or runtime_auth(argv, environ)
        if auth is not None:
            config = replace(config, auth=auth)

        driver = cls(
            machine_name=raw["machine_name"],
            store_path=raw.get("store_path", ""),
            config=config,
            compute=compute,
        )
        driver.ssh_port = raw.get("ssh_port", SSH_PORT)
        driver.ip_address = raw.get("ip_address", "")
        return driver
