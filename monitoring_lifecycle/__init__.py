"""
.. include:: ../README.md
"""

__all__ = [
    "alert_config",
    "config",
    "exceptions",
    "helm",
    "manifest",
    "orchestrator",
    "probe",
    "readiness",
    "resources",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
