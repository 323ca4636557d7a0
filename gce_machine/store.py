"""On-disk storage of driver envelopes.

Layout:
    <root>/machines/<name>/config.json   driver JSON envelope
    <root>/machines/<name>/id_rsa        SSH key pair (written by create)
"""
import os
import shutil
from pathlib import Path
from typing import List, Mapping, Optional

from gce_machine.driver import GCEDriver

CONFIG_FILENAME = "config.json"
DEFAULT_STORE_PATH = os.path.join("~", ".gce-machine")


class MachineNotFoundError(Exception):
    """No stored machine with that name."""

    def __init__(self, name: str):
        super().__init__(f"Host does not exist: {name!r}")
        self.name = name


class MachineStore:
    """Stores one directory per machine under ``root``."""

    def __init__(self, root: Optional[str] = None):
        self.root = os.path.expanduser(root or DEFAULT_STORE_PATH)

    def path_for(self, name: str) -> Path:
        return Path(self.root) / "machines" / name

    def exists(self, name: str) -> bool:
        return (self.path_for(name) / CONFIG_FILENAME).exists()

    def save(self, driver: GCEDriver) -> None:
        path = self.path_for(driver.machine_name)
        path.mkdir(parents=True, exist_ok=True)
        (path / CONFIG_FILENAME).write_text(driver.to_json())

    def load(
        self,
        name: str,
        argv: Optional[List[str]] = None,
        environ: Optional[Mapping[str, str]] = None,
        live_auth: Optional[str] = None,
    ) -> GCEDriver:
        """Load a stored driver, applying credentials from the live process.

        Raises:
            MachineNotFoundError: If nothing is stored under ``name``
        """
        config_path = self.path_for(name) / CONFIG_FILENAME
        if not config_path.exists():
            raise MachineNotFoundError(name)
        return GCEDriver.from_json(
            config_path.read_text(), argv=argv, environ=environ, live_auth=live_auth
        )

    def remove(self, name: str) -> None:
        shutil.rmtree(self.path_for(name), ignore_errors=True)

    def list_names(self) -> List[str]:
        machines = Path(self.root) / "machines"
        if not machines.exists():
            return []
        return sorted(p.name for p in machines.iterdir() if (p / CONFIG_FILENAME).exists())
