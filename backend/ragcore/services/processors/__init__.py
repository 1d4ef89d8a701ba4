"""
Content processors: chunking, embedding providers, the embedding client
and search-text helpers.
"""
