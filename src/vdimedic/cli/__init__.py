"""VDIMedic command line interface."""
