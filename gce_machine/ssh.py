"""SSH key pair handling for gce-machine hosts."""
import logging
import subprocess
from pathlib import Path

from gce_machine.errors import SSHKeyError

logger = logging.getLogger(__name__)


def generate_ssh_key(path: str) -> None:
    """Create an RSA key pair at ``path`` and ``path.pub``.

    Does nothing if the private key already exists.

    Raises:
        SSHKeyError: If ssh-keygen is missing or fails
    """
    key_path = Path(path)
    if key_path.exists():
        logger.debug("SSH key %s already exists", key_path)
        return

    key_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        result = subprocess.run(
            ["ssh-keygen", "-t", "rsa", "-b", "4096", "-f", str(key_path), "-N", "", "-q"],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        raise SSHKeyError("ssh-keygen not found. Install an OpenSSH client.")
    if result.returncode != 0:
        raise SSHKeyError(f"SSH key generation failed: {result.stderr.strip()}")


def read_public_key(path: str) -> str:
    """Return the contents of ``path.pub``.

    Raises:
        SSHKeyError: If the public key cannot be read
    """
    public_path = Path(f"{path}.pub")
    try:
        return public_path.read_text().strip()
    except OSError as e:
        raise SSHKeyError(f"cannot read SSH public key {public_path}: {e}")
