"""Pipelines for normalization, matching and job orchestration.

Each step is callable on its own so the same matcher serves single uploads,
streamed uploads and batch jobs.
"""
