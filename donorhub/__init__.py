"""
donorhub: layered donor warehouse pipeline.

Raw exports land in object storage, are ingested into ``raw_records``, typed
into per-source silver tables, resolved into master identities, and exposed
through serving views that are finally materialized into indexed tables.
"""

__version__ = "0.1.0"
