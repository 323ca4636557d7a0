"""Configuration for the gce-machine driver.

DriverConfig is the immutable snapshot of every instance setting. It is
built from command-line flags and their GOOGLE_* environment variables by
config_from_options(), and is carried inside the driver's JSON envelope.
"""
import os
import re
import sys
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


DEFAULT_ZONE = "us-central1-a"
DEFAULT_USER = "docker-user"
DEFAULT_MACHINE_TYPE = "n1-standard-1"
DEFAULT_IMAGE_NAME = "ubuntu-os-cloud/global/images/ubuntu-2204-jammy-v20220420"
DEFAULT_SCOPES = (
    "https://www.googleapis.com/auth/devstorage.read_only",
    "https://www.googleapis.com/auth/logging.write",
    "https://www.googleapis.com/auth/monitoring.write",
)
DEFAULT_DISK_TYPE = "pd-standard"
DEFAULT_DISK_SIZE = 10
DEFAULT_NETWORK = "default"
DEFAULT_SUBNETWORK = ""

IMAGE_URL_PREFIX = "https://www.googleapis.com/compute/v1/projects/"

_PORT_SPEC = re.compile(r"^(\d{1,5})(?:-(\d{1,5}))?(?:/(tcp|udp|sctp))?$")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class DriverConfig:
    """Settings for one Compute Engine instance.

    Attributes:
        project: GCP project ID (required)
        auth: Base64 encoded service account JSON; empty means application
            default credentials
        zone: Zone the instance and its disk live in
        machine_type: GCE machine type
        machine_image: Image path relative to the compute projects URL
        disk_type: Boot disk type (pd-standard, pd-ssd, ...)
        disk_size: Boot disk size in GB
        network: VPC network name
        subnetwork: Subnetwork name, empty for auto-mode networks
        address: Static external IP to attach, empty for ephemeral
        preemptible: Create a preemptible instance
        use_internal_ip: Report the internal IP instead of the NAT IP
        use_internal_ip_only: Create the instance without an external IP
        scopes: Service account scopes
        tags: Extra network tags
        labels: Instance labels
        use_existing: Target a pre-existing instance instead of creating one
        open_ports: Ports opened to the internet (e.g. 8080/tcp)
        external_firewall_rule_prefix: Prefix of the public firewall rule
        internal_firewall_rule_prefix: Prefix of the internal firewall rule
        userdata: Path to a cloud-init file, replaced by its contents once
            the pre-create check has read it
        username: SSH user
    """

    project: str = ""
    auth: str = ""
    zone: str = DEFAULT_ZONE
    machine_type: str = DEFAULT_MACHINE_TYPE
    machine_image: str = DEFAULT_IMAGE_NAME
    disk_type: str = DEFAULT_DISK_TYPE
    disk_size: int = DEFAULT_DISK_SIZE
    network: str = DEFAULT_NETWORK
    subnetwork: str = DEFAULT_SUBNETWORK
    address: str = ""
    preemptible: bool = False
    use_internal_ip: bool = False
    use_internal_ip_only: bool = False
    scopes: Tuple[str, ...] = DEFAULT_SCOPES
    tags: Tuple[str, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)
    use_existing: bool = False
    open_ports: Tuple[str, ...] = ()
    external_firewall_rule_prefix: str = ""
    internal_firewall_rule_prefix: str = ""
    userdata: str = ""
    username: str = DEFAULT_USER

    @property
    def region(self) -> str:
        """Derive region from zone (e.g., us-central1-a -> us-central1)."""
        parts = self.zone.rsplit("-", 1)
        return parts[0] if len(parts) > 1 else self.zone

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors.

        Returns:
            List of error messages, empty if valid
        """
        errors = []

        if not self.project:
            errors.append("no Google Cloud Project name specified (--google-project)")
        if self.disk_size <= 0:
            errors.append(f"disk size must be positive, got {self.disk_size}")
        if self.open_ports and not self.external_firewall_rule_prefix:
            errors.append(
                "the 'google-external-firewall-rule-prefix' flag must be provided "
                "when opening ports publicly"
            )
        for port in self.open_ports:
            if not _PORT_SPEC.match(port.strip().lower()):
                errors.append(f"invalid port specification: {port!r}")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        """Plain JSON-compatible representation."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, dict):
                value = dict(value)
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DriverConfig":
        """Rebuild a config from to_dict() output, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            if key not in known:
                continue
            if isinstance(value, list):
                value = tuple(value)
            kwargs[key] = value
        return cls(**kwargs)


def split_csv(value: Optional[Any]) -> Tuple[str, ...]:
    """Split a comma-separated string (or flatten a sequence of them)."""
    if not value:
        return ()
    if isinstance(value, str):
        value = [value]
    items = []
    for chunk in value:
        for item in str(chunk).split(","):
            item = item.strip()
            if item:
                items.append(item)
    return tuple(items)


def parse_labels(value: Optional[str]) -> Dict[str, str]:
    """Parse ``key=value,key2=value2`` into a dict.

    Raises:
        ConfigError: If an entry has no ``=``
    """
    labels = {}
    for item in split_csv(value):
        key, sep, val = item.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"invalid label {item!r}, expected key=value")
        labels[key.strip()] = val.strip()
    return labels


def parse_open_ports(ports: Iterable[str]) -> Dict[str, List[str]]:
    """Group port specs by protocol.

    ``8080`` defaults to tcp; ranges are kept as ``start-end``.

    Returns:
        Dict mapping protocol to a sorted, de-duplicated list of ports

    Raises:
        ConfigError: If a port spec is malformed or out of range
    """
    grouped: Dict[str, List[str]] = {}
    for spec in ports:
        match = _PORT_SPEC.match(spec.strip().lower())
        if not match:
            raise ConfigError(f"invalid port specification: {spec!r}")
        start, end, protocol = match.groups()
        protocol = protocol or "tcp"
        for number in (start, end):
            if number is not None and not 0 < int(number) <= 65535:
                raise ConfigError(f"port out of range in {spec!r}")
        port = f"{start}-{end}" if end else start
        grouped.setdefault(protocol, [])
        if port not in grouped[protocol]:
            grouped[protocol].append(port)

    for protocol in grouped:
        grouped[protocol].sort(key=lambda p: int(p.split("-")[0]))
    return grouped


def config_from_options(options: Mapping[str, Any]) -> DriverConfig:
    """Bind flag values into a DriverConfig.

    Keys follow the flag names with underscores, e.g. ``google_project``
    for ``--google-project``. Missing keys fall back to defaults.

    In use-existing mode only the project, credentials, zone, username,
    user-data and labels are taken from the options: the instance already
    exists, so creation-time settings are left at their defaults. Labels are
    merged into the existing instance's labels.

    Raises:
        ConfigError: If the project is missing, a value cannot be parsed or
            the combination fails DriverConfig.validate()
    """
    def opt(name: str, default: Any = None) -> Any:
        value = options.get(name)
        return default if value is None else value

    project = opt("google_project", "")
    if not project:
        raise ConfigError("no Google Cloud Project name specified (--google-project)")

    values: Dict[str, Any] = {
        "project": project,
        "auth": opt("google_auth_encoded_json", ""),
        "zone": opt("google_zone", DEFAULT_ZONE),
        "use_existing": bool(opt("google_use_existing", False)),
        "username": opt("google_username", DEFAULT_USER) or DEFAULT_USER,
        "userdata": opt("google_userdata", ""),
        "labels": parse_labels(opt("google_vm_labels", "")),
    }

    if not values["use_existing"]:
        internal_ip_only = bool(opt("google_use_internal_ip_only", False))
        image = opt("google_machine_image", DEFAULT_IMAGE_NAME)
        if image.startswith(IMAGE_URL_PREFIX):
            image = image[len(IMAGE_URL_PREFIX):]
        values.update(
            machine_type=opt("google_machine_type", DEFAULT_MACHINE_TYPE),
            machine_image=image,
            disk_size=int(opt("google_disk_size", DEFAULT_DISK_SIZE)),
            disk_type=opt("google_disk_type", DEFAULT_DISK_TYPE),
            address=opt("google_address", ""),
            network=opt("google_network", DEFAULT_NETWORK),
            subnetwork=opt("google_subnetwork", DEFAULT_SUBNETWORK),
            preemptible=bool(opt("google_preemptible", False)),
            use_internal_ip=bool(opt("google_use_internal_ip", False)) or internal_ip_only,
            use_internal_ip_only=internal_ip_only,
            scopes=split_csv(opt("google_scopes", ",".join(DEFAULT_SCOPES))),
            tags=split_csv(opt("google_tags", "")),
            open_ports=split_csv(opt("google_open_port", ())),
            external_firewall_rule_prefix=opt("google_external_firewall_rule_prefix", ""),
            internal_firewall_rule_prefix=opt("google_internal_firewall_rule_prefix", ""),
        )

    config = DriverConfig(**values)
    errors = config.validate()
    if errors:
        raise ConfigError("; ".join(errors))
    # validate() only checks the port syntax, this also checks the range.
    parse_open_ports(config.open_ports)
    return config


AUTH_FLAG = "--google-auth-encoded-json"
AUTH_ENV_VAR = "GOOGLE_AUTH_ENCODED_JSON"


def runtime_auth(
    argv: Optional[List[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Optional[str]:
    """Credentials given to the current process, if any.

    Looks for ``--google-auth-encoded-json`` in ``argv`` (``sys.argv`` by
    default), then for GOOGLE_AUTH_ENCODED_JSON in ``environ``
    (``os.environ`` by default).

    Returns:
        The encoded credentials, or None if neither source sets them
    """
    argv = sys.argv if argv is None else argv
    environ = os.environ if environ is None else environ

    for i, arg in enumerate(argv):
        if arg == AUTH_FLAG and i + 1 < len(argv):
            return argv[i + 1]
        if arg.startswith(AUTH_FLAG + "="):
            return arg.split("=", 1)[1]
    if AUTH_ENV_VAR in environ:
        return environ[AUTH_ENV_VAR]
    return None
