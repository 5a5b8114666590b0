"""Egress module - WireGuard egress points, tunnel control and health probes."""

from .registry import EgressRegistry
from .tunnel import WireGuardTunnel
from .probe import HttpReachabilityProbe

__all__ = ["EgressRegistry", "WireGuardTunnel", "HttpReachabilityProbe"]
