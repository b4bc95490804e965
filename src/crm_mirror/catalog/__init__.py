"""Catalog cache module -- models, schemas, repository and the sync engine.

Provides SQLAlchemy models for the four cached relations (products, deals,
contacts, product-deal links), Pydantic records and views, the per-partition
repository, the watermark tracker, the reconciler, the migration handler and
the MirrorService facade used by the HTTP layer.
"""
