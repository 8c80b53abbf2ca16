"""Multi-cluster kubectl/helm tools served over an MCP-style HTTP interface."""

__version__ = "1.0.0"
