"""Google Compute Engine access for gce-machine.

Note: the driver imports these modules directly:
    from gce_machine.gcp.compute import ComputeService
    from gce_machine.gcp.prober import ResourceProber
    from gce_machine.gcp.firewall import FirewallReconciler
"""
