"""Limits, traffic accounting, DNS configuration, sniffing and dispatch helpers for multi-user proxy nodes."""

__version__ = "0.1.0"