"""repograph: hybrid retrieval over a multi-repository code knowledge base."""

__version__ = "0.1.0"
