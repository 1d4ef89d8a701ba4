"""
Retrieval services

- Ranking (vector + lexical fan-out, weighted blend with usage and recency)
- Query orchestration (events, feedback, context assembly)
- Usage tracking
"""
