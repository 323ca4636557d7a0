"""Compute Engine access for gce-machine.

ComputeService is the only place that talks to the Compute Engine API.
Reads return compute_v1 resources and raise the provider's exceptions;
mutations block until their zone or global operation is DONE.
"""
import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Optional

from google.api_core.exceptions import NotFound
from google.cloud import compute_v1
from google.oauth2 import service_account

from gce_machine.errors import OperationError, PreconditionError

logger = logging.getLogger(__name__)

COMPUTE_SCOPE = "https://www.googleapis.com/auth/compute"


def is_not_found(error: Optional[BaseException]) -> bool:
    """Return True if ``error`` means the queried resource does not exist."""
    return isinstance(error, NotFound)


def credentials_from_encoded_json(auth: str) -> Optional[service_account.Credentials]:
    """Build service account credentials from a base64 encoded JSON key.

    Args:
        auth: Base64 encoded service account JSON, or empty

    Returns:
        Credentials, or None to let the clients use application default
        credentials

    Raises:
        PreconditionError: If the blob cannot be decoded
    """
    if not auth:
        return None
    try:
        info = json.loads(base64.b64decode(auth))
    except (binascii.Error, ValueError) as e:
        raise PreconditionError(f"cannot decode --google-auth-encoded-json: {e}")
    return service_account.Credentials.from_service_account_info(
        info, scopes=[COMPUTE_SCOPE]
    )


class ComputeService:
    """Instance, disk, firewall and project calls for one project and zone."""

    def __init__(self, project: str, zone: str, credentials: Any = None):
        """Initialize the service.

        Args:
            project: GCP project ID
            zone: GCP zone (e.g., us-central1-a)
            credentials: google.auth credentials, None for the default chain
        """
        self.project = project
        self.zone = zone
        self.credentials = credentials
        self._instances_client = None
        self._disks_client = None
        self._firewalls_client = None
        self._projects_client = None
        self._zone_ops_client = None
        self._global_ops_client = None

    @property
    def instances_client(self) -> compute_v1.InstancesClient:
        """Lazy-initialize instances client."""
        if self._instances_client is None:
            self._instances_client = compute_v1.InstancesClient(credentials=self.credentials)
        return self._instances_client

    @property
    def disks_client(self) -> compute_v1.DisksClient:
        """Lazy-initialize disks client."""
        if self._disks_client is None:
            self._disks_client = compute_v1.DisksClient(credentials=self.credentials)
        return self._disks_client

    @property
    def firewalls_client(self) -> compute_v1.FirewallsClient:
        """Lazy-initialize firewalls client."""
        if self._firewalls_client is None:
            self._firewalls_client = compute_v1.FirewallsClient(credentials=self.credentials)
        return self._firewalls_client

    @property
    def projects_client(self) -> compute_v1.ProjectsClient:
        """Lazy-initialize projects client."""
        if self._projects_client is None:
            self._projects_client = compute_v1.ProjectsClient(credentials=self.credentials)
        return self._projects_client

    @property
    def zone_ops_client(self) -> compute_v1.ZoneOperationsClient:
        """Lazy-initialize zone operations client."""
        if self._zone_ops_client is None:
            self._zone_ops_client = compute_v1.ZoneOperationsClient(credentials=self.credentials)
        return self._zone_ops_client

    @property
    def global_ops_client(self) -> compute_v1.GlobalOperationsClient:
        """Lazy-initialize global operations client."""
        if self._global_ops_client is None:
            self._global_ops_client = compute_v1.GlobalOperationsClient(
                credentials=self.credentials
            )
        return self._global_ops_client

    # Project

    def get_project(self) -> compute_v1.Project:
        return self.projects_client.get(project=self.project)

    # Instances

    def get_instance(self, name: str) -> compute_v1.Instance:
        return self.instances_client.get(project=self.project, zone=self.zone, instance=name)

    def insert_instance(self, instance: compute_v1.Instance) -> None:
        logger.info("Creating instance %s in zone %s", instance.name, self.zone)
        operation = self.instances_client.insert(
            project=self.project,
            zone=self.zone,
            instance_resource=instance,
        )
        self._wait_for_zone_operation(operation)

    def delete_instance(self, name: str) -> None:
        logger.info("Deleting instance %s in zone %s", name, self.zone)
        operation = self.instances_client.delete(
            project=self.project, zone=self.zone, instance=name
        )
        self._wait_for_zone_operation(operation)

    def start_instance(self, name: str) -> None:
        logger.info("Starting instance %s", name)
        operation = self.instances_client.start(
            project=self.project, zone=self.zone, instance=name
        )
        self._wait_for_zone_operation(operation)

    def stop_instance(self, name: str) -> None:
        logger.info("Stopping instance %s", name)
        operation = self.instances_client.stop(
            project=self.project, zone=self.zone, instance=name
        )
        self._wait_for_zone_operation(operation)

    def set_tags(self, name: str, items: List[str], fingerprint: str = "") -> None:
        tags = compute_v1.Tags(items=list(items), fingerprint=fingerprint)
        operation = self.instances_client.set_tags(
            project=self.project,
            zone=self.zone,
            instance=name,
            tags_resource=tags,
        )
        self._wait_for_zone_operation(operation)

    def set_metadata(self, name: str, metadata: compute_v1.Metadata) -> None:
        operation = self.instances_client.set_metadata(
            project=self.project,
            zone=self.zone,
            instance=name,
            metadata_resource=metadata,
        )
        self._wait_for_zone_operation(operation)

    def set_labels(self, name: str, labels: Dict[str, str], fingerprint: str = "") -> None:
        request = compute_v1.InstancesSetLabelsRequest(
            labels=dict(labels),
            label_fingerprint=fingerprint,
        )
        operation = self.instances_client.set_labels(
            project=self.project,
            zone=self.zone,
            instance=name,
            instances_set_labels_request_resource=request,
        )
        self._wait_for_zone_operation(operation)

    # Disks

    def get_disk(self, name: str) -> compute_v1.Disk:
        return self.disks_client.get(project=self.project, zone=self.zone, disk=name)

    def delete_disk(self, name: str) -> None:
        logger.info("Deleting disk %s in zone %s", name, self.zone)
        operation = self.disks_client.delete(project=self.project, zone=self.zone, disk=name)
        self._wait_for_zone_operation(operation)

    # Firewalls (global resources)

    def get_firewall(self, name: str) -> compute_v1.Firewall:
        return self.firewalls_client.get(project=self.project, firewall=name)

    def insert_firewall(self, firewall: compute_v1.Firewall) -> None:
        logger.info("Creating firewall rule %s", firewall.name)
        operation = self.firewalls_client.insert(
            project=self.project, firewall_resource=firewall
        )
        self._wait_for_global_operation(operation)

    def patch_firewall(self, name: str, firewall: compute_v1.Firewall) -> None:
        logger.info("Updating firewall rule %s", name)
        operation = self.firewalls_client.patch(
            project=self.project, firewall=name, firewall_resource=firewall
        )
        self._wait_for_global_operation(operation)

    def delete_firewall(self, name: str) -> None:
        logger.info("Deleting firewall rule %s", name)
        operation = self.firewalls_client.delete(project=self.project, firewall=name)
        self._wait_for_global_operation(operation)

    # Operations

    def _wait_for_zone_operation(self, operation: Any) -> None:
        """Block until a zone operation is DONE.

        wait() returns early on long operations, so it is called until the
        operation reports DONE. No deadline is applied here.
        """
        result = self.zone_ops_client.wait(
            project=self.project, zone=self.zone, operation=operation.name
        )
        while result.status != compute_v1.Operation.Status.DONE:
            result = self.zone_ops_client.wait(
                project=self.project, zone=self.zone, operation=operation.name
            )
        self._raise_for_operation(operation.name, result)

    def _wait_for_global_operation(self, operation: Any) -> None:
        """Block until a global operation is DONE."""
        result = self.global_ops_client.wait(project=self.project, operation=operation.name)
        while result.status != compute_v1.Operation.Status.DONE:
            result = self.global_ops_client.wait(project=self.project, operation=operation.name)
        self._raise_for_operation(operation.name, result)

    @staticmethod
    def _raise_for_operation(name: str, result: Any) -> None:
        error = getattr(result, "error", None)
        if not error or not error.errors:
            return
        details = [f"{e.code}: {e.message}" for e in error.errors]
        raise OperationError(name, details)
