"""Backend package: corpus, scoring, caching, experiments, pipelines, APIs.

This package turns an intake questionnaire into a curated set of student,
faculty and alumni connections with a fallback-safe matching pipeline.
"""
