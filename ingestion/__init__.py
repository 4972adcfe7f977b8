"""
DeriveStreet Ingestion Package

This package provides the social-data ingestion pipeline:

- Upstream gateway with circuit breaker and credential providers
- Database-backed response cache
- Narrative/emotion analysis client and sentiment aggregation
- Gap scanning and bounded backfill with progress streaming

Key Components:
- fetchers/: Upstream provider access
- cache/: Response cache and cache-fronted read path
- analysis/: Message analysis
- backfill/: Gap detection and backfill orchestration
"""

__version__ = "1.0.0"
__author__ = "DeriveStreet Team"
