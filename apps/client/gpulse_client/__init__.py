"""gpulse language client: launches and manages the WGSL language server."""

__version__ = "0.1.0"
