"""Backend package: settings, DB models, pipelines, APIs.

This package orchestrates BoQ parsing, normalization, embeddings, price
matching, job tracking and result export for the construction pricing CRM.
"""
