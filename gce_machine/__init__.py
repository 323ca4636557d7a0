"""gce-machine: manage a single Google Compute Engine host.

The driver converges an instance, its boot disk and its firewall rules to
the configured state and answers lifecycle queries (state, IP, URL).
"""

__version__ = "0.1.0"
