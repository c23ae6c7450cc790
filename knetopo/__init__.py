"""Network emulation topology model, vendor node types and an in-memory cluster."""

__version__ = "0.1.0"

__all__ = ["kube", "model", "node", "nokia", "openconfig", "topofile"]