"""Provider sync infrastructure for Waypoint.

Modules:
    orchestrator — Listing, detailing, inserting and checkpointing a sync run
    jobs         — Job-queue boundary: credential handling and outcome mapping
    dedup        — Deduplicated bulk insertion (natural-key based)
    store        — asyncpg-backed activity and credential stores
"""
