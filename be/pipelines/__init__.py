"""Request pipelines: profile normalization, semantic retrieval, and matching.

Each step is callable on its own so offline tools and tests can drive them
without the HTTP layer.
"""
