"""Live message thread and meeting scheduling for CSR partnerships."""

__version__ = "1.0.0"
