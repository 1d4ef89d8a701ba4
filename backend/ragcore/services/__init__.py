"""
Retrieval core services.

The wired-up entry point lives in ragcore.services.factory:

    from ragcore.services.factory import RagCore
"""
