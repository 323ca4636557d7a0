"""Pytest fixtures for gce_machine tests."""
import os
import pytest
from unittest.mock import patch

from google.api_core.exceptions import NotFound
from google.cloud import compute_v1


FAKE_NAT_IP = "203.0.113.10"
FAKE_INTERNAL_IP = "10.128.0.2"


def _copy_firewall(firewall):
    return compute_v1.Firewall.deserialize(compute_v1.Firewall.serialize(firewall))


class FakeCompute:
    """In-memory stand-in for ComputeService.

    Keeps instances, disks and firewalls in dicts, raises NotFound like the
    API does, and records every call in ``calls``. Set ``failures[method]``
    to an exception to make that method raise it.
    """

    def __init__(self, project="test-project", zone="us-central1-a"):
        self.project = project
        self.zone = zone
        self.instances = {}
        self.disks = {}
        self.firewalls = {}
        self.calls = []
        self.failures = {}

    NAT_IP = FAKE_NAT_IP
    INTERNAL_IP = FAKE_INTERNAL_IP

    MUTATIONS = {
        "insert_instance", "delete_instance", "start_instance", "stop_instance",
        "set_tags", "set_metadata", "set_labels", "delete_disk",
        "insert_firewall", "patch_firewall", "delete_firewall",
    }

    @property
    def mutations(self):
        return [c for c in self.calls if c[0] in self.MUTATIONS]

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        if method in self.failures:
            raise self.failures[method]

    # Project

    def get_project(self):
        self._record("get_project")
        return compute_v1.Project(name=self.project)

    # Instances

    def add_instance(self, name, status="RUNNING", with_disk=True):
        instance = compute_v1.Instance(
            name=name,
            status=status,
            network_interfaces=[
                compute_v1.NetworkInterface(
                    network_i_p=FAKE_INTERNAL_IP,
                    access_configs=[
                        compute_v1.AccessConfig(
                            nat_i_p=FAKE_NAT_IP if status == "RUNNING" else ""
                        )
                    ],
                )
            ],
            tags=compute_v1.Tags(items=[], fingerprint="tags-fp"),
            metadata=compute_v1.Metadata(items=[], fingerprint="meta-fp"),
        )
        self.instances[name] = instance
        if with_disk:
            self.add_disk(f"{name}-disk")
        return instance

    def add_disk(self, name):
        disk = compute_v1.Disk(name=name)
        self.disks[name] = disk
        return disk

    def get_instance(self, name):
        self._record("get_instance", name)
        if name not in self.instances:
            raise NotFound(f"The resource 'instances/{name}' was not found")
        return self.instances[name]

    def insert_instance(self, instance):
        self._record("insert_instance", instance.name)
        stored = compute_v1.Instance.deserialize(compute_v1.Instance.serialize(instance))
        stored.status = "RUNNING"
        if stored.network_interfaces and stored.network_interfaces[0].access_configs:
            stored.network_interfaces[0].access_configs[0].nat_i_p = FAKE_NAT_IP
        self.instances[instance.name] = stored
        params = instance.disks[0].initialize_params if instance.disks else None
        if params and params.disk_name:
            self.add_disk(params.disk_name)

    def delete_instance(self, name):
        self._record("delete_instance", name)
        if name not in self.instances:
            raise NotFound(f"The resource 'instances/{name}' was not found")
        del self.instances[name]

    def start_instance(self, name):
        self._record("start_instance", name)
        instance = self.get_instance(name)
        instance.status = "RUNNING"
        instance.network_interfaces[0].access_configs[0].nat_i_p = FAKE_NAT_IP

    def stop_instance(self, name):
        self._record("stop_instance", name)
        instance = self.get_instance(name)
        instance.status = "TERMINATED"
        instance.network_interfaces[0].access_configs[0].nat_i_p = ""

    def set_tags(self, name, items, fingerprint=""):
        self._record("set_tags", name, list(items))
        self.instances[name].tags = compute_v1.Tags(items=list(items))

    def set_metadata(self, name, metadata):
        self._record("set_metadata", name)
        self.instances[name].metadata = metadata

    def set_labels(self, name, labels, fingerprint=""):
        self._record("set_labels", name, dict(labels))
        self.instances[name].labels = dict(labels)

    # Disks

    def get_disk(self, name):
        self._record("get_disk", name)
        if name not in self.disks:
            raise NotFound(f"The resource 'disks/{name}' was not found")
        return self.disks[name]

    def delete_disk(self, name):
        self._record("delete_disk", name)
        if name not in self.disks:
            raise NotFound(f"The resource 'disks/{name}' was not found")
        del self.disks[name]

    # Firewalls

    def get_firewall(self, name):
        self._record("get_firewall", name)
        if name not in self.firewalls:
            raise NotFound(f"The resource 'firewalls/{name}' was not found")
        return self.firewalls[name]

    def insert_firewall(self, firewall):
        self._record("insert_firewall", firewall.name)
        self.firewalls[firewall.name] = _copy_firewall(firewall)

    def patch_firewall(self, name, firewall):
        self._record("patch_firewall", name)
        self.firewalls[name] = _copy_firewall(firewall)

    def delete_firewall(self, name):
        self._record("delete_firewall", name)
        if name not in self.firewalls:
            raise NotFound(f"The resource 'firewalls/{name}' was not found")
        del self.firewalls[name]


@pytest.fixture
def fake_compute():
    """Empty in-memory project."""
    return FakeCompute()


@pytest.fixture
def mock_env_vars():
    """Fixture to set up and tear down environment variables."""
    original_env = os.environ.copy()

    def _set_env(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value

    yield _set_env

    # Restore original environment
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def ssh_key(tmp_path):
    """Pretend ssh-keygen ran: write a key pair where the driver expects it."""
    def _write(machine_name):
        key_dir = tmp_path / "machines" / machine_name
        key_dir.mkdir(parents=True, exist_ok=True)
        (key_dir / "id_rsa").write_text("PRIVATE")
        (key_dir / "id_rsa.pub").write_text("ssh-rsa AAAAB3Nza test@host")
        return str(key_dir / "id_rsa")
    return _write


@pytest.fixture
def no_keygen():
    """Skip real ssh-keygen calls."""
    with patch("gce_machine.driver.generate_ssh_key") as mock_keygen:
        yield mock_keygen
