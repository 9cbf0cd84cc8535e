"""
Retrieval subpackage: the three-stage search funnel.

Stages:
1. CandidateSelector - Hamming distance over binary codes
2. Reranker - exact cosine similarity over full vectors
3. ResultSorter - caller-defined ordering and truncation to K
"""

from .candidates import CandidateSelector
from .ordering import ResultSorter, order_candidates
from .rerank import EPSILON, Reranker, cosine_similarity
from .search import SearchOrchestrator, compile_predicate, compile_sort
from .topk import BoundedTopK

__all__ = [
    "BoundedTopK",
    "CandidateSelector",
    "EPSILON",
    "Reranker",
    "ResultSorter",
    "SearchOrchestrator",
    "compile_predicate",
    "compile_sort",
    "cosine_similarity",
    "order_candidates",
]
