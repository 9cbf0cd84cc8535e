"""
Vector Search Module

Approximate nearest-neighbour search over document-chunk embeddings.

Key components:
- quantization.py: 1-bit sign quantization and Hamming distance
- query/: Filter and sort builders that compile to language-neutral expressions
- retrieval/: The candidate funnel (Hamming selection, cosine rerank, ordering)
- storage/: Embedding stores, document repositories and the embed queue

Key concepts:
- Binary code: one sign bit per dimension, packed into hex nibbles.
- Candidate funnel: scan (S1) -> Hamming top-S2 -> cosine top-S3 -> final K.
- Predicate group: an OR-combination of filters; groups are AND-combined.
"""

__version__ = "0.1.0"
