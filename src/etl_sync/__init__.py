"""
Incremental ETL synchronization with consistency validation

Copies rows from a source table to a target table, possibly on a different
database engine, and proves the two sides agree by comparing per-bucket
checksums over the whole key range, repairing only the buckets that differ.

Components:
- dialect: Per-engine SQL generation and dialect resolution
- metadata: Table structure inspection and structural digests
- state: Checkpoints, execution/validation logs and bucket records
- bucket: Key-range partitioning, checksums and bucket repair
- sync: Column mapping, extraction, loading and run orchestration

Usage:
    from etl_sync.app import build_engine
    from etl_sync.config import load_config

    config = load_config("etl-sync.yaml")
    engine = build_engine(config)
    engine.orchestrator.execute(config.jobs["orders"])
"""

__version__ = "1.0.0"
__all__ = ["dialect", "metadata", "state", "bucket", "sync"]
