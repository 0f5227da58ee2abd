"""downfiles: resolve media URLs to renditions and stream them to clients."""

__version__ = "1.0.0"
