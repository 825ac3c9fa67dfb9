"""msgio - stream and uploaded-file adapters for HTTP message layers."""

__version__ = "0.1.0"
