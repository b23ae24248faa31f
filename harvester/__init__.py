"""Listing-driven news harvester: discover articles, extract fields, persist them."""

from .pipeline import ArticleIngestor, HarvestJob, HarvestResult, JobStatus

__all__ = ["ArticleIngestor", "HarvestJob", "HarvestResult", "JobStatus"]
