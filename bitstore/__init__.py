"""bitstore: backend-agnostic bitstream storage for local disk and S3-compatible object stores."""

__version__ = "1.0.0"
