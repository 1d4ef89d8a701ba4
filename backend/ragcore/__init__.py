"""
ragcore - hybrid retrieval core.

Indexes heterogeneous content into semantic chunks, embeds them, and serves
queries ranked by a blend of vector similarity, lexical match and usage.
"""

__version__ = "0.1.0"
