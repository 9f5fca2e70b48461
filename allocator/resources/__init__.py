"""
allocator/resources: OS-level capability probing.

Public API:
    ResourceProbe       : reads CPU clock/cores and memory into NodeResources
    ResourceProbeError  : fatal at startup
    local_ip_address()  : the IPv4 this node advertises in the plan
"""

from allocator.resources.probe import ResourceProbe, ResourceProbeError, local_ip_address

__all__ = ["ResourceProbe", "ResourceProbeError", "local_ip_address"]
