"""Export orchestration for chunked, multi-process video rendering."""

__version__ = "0.1.0"
