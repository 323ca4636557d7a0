"""Instance resources for gce-machine.

This module builds the compute_v1.Instance sent on insert and reads
addresses back from instances. It makes no API calls itself.
"""
from typing import Iterable, Optional

from google.cloud import compute_v1

from gce_machine.config import DriverConfig

SSH_KEYS_METADATA_KEY = "ssh-keys"
USERDATA_METADATA_KEY = "user-data"
INSTANCE_DESCRIPTION = "docker host vm"


def build_instance(
    config: DriverConfig,
    machine_name: str,
    disk_name: str,
    public_key: str,
    tags: Iterable[str],
    existing_disk: Optional[compute_v1.Disk] = None,
) -> compute_v1.Instance:
    """Build the instance resource for a new VM.

    The boot disk is kept when the instance is deleted, so a machine whose
    instance was removed can be recreated on top of its old disk: pass that
    disk as ``existing_disk`` to attach it instead of creating a new one.

    Args:
        config: Driver configuration
        machine_name: Instance name
        disk_name: Boot disk name
        public_key: SSH public key installed for ``config.username``
        tags: Network tags (firewall targets)
        existing_disk: Retained boot disk to reattach, if any

    Returns:
        compute_v1.Instance ready for insert
    """
    zone_path = f"projects/{config.project}/zones/{config.zone}"

    disk = compute_v1.AttachedDisk()
    disk.boot = True
    disk.auto_delete = False
    disk.type_ = "PERSISTENT"
    disk.mode = "READ_WRITE"
    if existing_disk is not None:
        disk.source = f"{zone_path}/disks/{disk_name}"
    else:
        disk_init = compute_v1.AttachedDiskInitializeParams()
        disk_init.disk_name = disk_name
        disk_init.source_image = f"projects/{config.machine_image}"
        disk_init.disk_size_gb = config.disk_size
        disk_init.disk_type = f"{zone_path}/diskTypes/{config.disk_type}"
        disk.initialize_params = disk_init

    network = compute_v1.NetworkInterface()
    network.network = f"projects/{config.project}/global/networks/{config.network}"
    if config.subnetwork:
        network.subnetwork = (
            f"projects/{config.project}/regions/{config.region}/subnetworks/{config.subnetwork}"
        )
    if not config.use_internal_ip_only:
        access_config = compute_v1.AccessConfig()
        access_config.type_ = "ONE_TO_ONE_NAT"
        access_config.name = "External NAT"
        if config.address:
            access_config.nat_i_p = config.address
        network.access_configs = [access_config]

    metadata = merge_ssh_key_metadata(None, config.username, public_key)
    if config.userdata:
        metadata.items.append(
            compute_v1.Items(key=USERDATA_METADATA_KEY, value=config.userdata)
        )

    service_account = compute_v1.ServiceAccount()
    service_account.email = "default"
    service_account.scopes = list(config.scopes)

    instance = compute_v1.Instance()
    instance.name = machine_name
    instance.description = INSTANCE_DESCRIPTION
    instance.machine_type = f"{zone_path}/machineTypes/{config.machine_type}"
    instance.disks = [disk]
    instance.network_interfaces = [network]
    instance.metadata = metadata
    instance.tags = compute_v1.Tags(items=list(tags))
    instance.service_accounts = [service_account]
    if config.labels:
        instance.labels = dict(config.labels)

    if config.preemptible:
        scheduling = compute_v1.Scheduling()
        scheduling.preemptible = True
        scheduling.automatic_restart = False
        scheduling.on_host_maintenance = "TERMINATE"
        instance.scheduling = scheduling

    return instance


def merge_ssh_key_metadata(
    metadata: Optional[compute_v1.Metadata],
    username: str,
    public_key: str,
) -> compute_v1.Metadata:
    """Return metadata with ``username:public_key`` added to ssh-keys.

    Existing items and keys are kept; the fingerprint is carried over so
    the result can be passed to set_metadata.
    """
    entry = f"{username}:{public_key.strip()}"
    merged = compute_v1.Metadata()
    if metadata is not None and metadata.fingerprint:
        merged.fingerprint = metadata.fingerprint

    items = []
    found = False
    for item in (metadata.items if metadata is not None else []):
        if item.key == SSH_KEYS_METADATA_KEY:
            found = True
            keys = [k for k in item.value.splitlines() if k.strip()]
            if entry not in keys:
                keys.append(entry)
            items.append(compute_v1.Items(key=item.key, value="\n".join(keys)))
        else:
            items.append(compute_v1.Items(key=item.key, value=item.value))
    if not found:
        items.append(compute_v1.Items(key=SSH_KEYS_METADATA_KEY, value=entry))

    merged.items = items
    return merged


def instance_ip(instance: compute_v1.Instance, use_internal_ip: bool = False) -> str:
    """Address of the first network interface, or "" if it has none."""
    if not instance.network_interfaces:
        return ""
    nic = instance.network_interfaces[0]
    if use_internal_ip:
        return nic.network_i_p or ""
    for access_config in nic.access_configs:
        if access_config.nat_i_p:
            return access_config.nat_i_p
    return ""
