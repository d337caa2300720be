"""Knowledge base RAG server: chunking, embedding and vector search over per-owner collections."""

__version__ = "0.1.0"
