"""VDIMedic - hung and ghost session remediation for VDI fleets."""

__version__ = "0.3.0"
