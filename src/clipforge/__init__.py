"""clipforge - asynchronous video generation backend."""

__version__ = "0.1.0"
