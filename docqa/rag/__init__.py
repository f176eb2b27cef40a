"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document chunking with overlap
- Embedding generation and cosine similarity
- FAISS-backed similarity search over stored chunk vectors
- Answer generation with confidence scoring
- Presentation formatting of answers
- Ingestion and batch embedding of documents
"""
