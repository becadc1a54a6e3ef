"""
Policy enforcement for data release.
"""

from .gate import EnforcementGate, Loader, ReleaseResult

__all__ = ["EnforcementGate", "Loader", "ReleaseResult"]
