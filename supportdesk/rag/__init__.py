"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Text extraction from uploaded files
- Document chunking with overlap
- Batched embedding generation
- Cosine similarity search over stored vectors
- Semantic response caching
- Learning from agent replies
"""
