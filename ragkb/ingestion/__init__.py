"""Ingestion package for offline/batch pipelines.

Contains the pipeline that turns a folder of markdown documents into chunked,
embedded rows in Postgres. See pipeline.py.
"""
from ragkb.ingestion.pipeline import IngestionPipeline, discover_files

__all__ = ["IngestionPipeline", "discover_files"]
