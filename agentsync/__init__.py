"""agentsync — distribute versioned agent artifacts into consumer projects."""

__version__ = "0.1.0"
