"""
Database Schema Reference
=========================

This file provides a quick reference for all database tables and columns.
For actual SQLAlchemy models, see: palette_tagging/db/models.py

"""

# ============================================================================
# PALETTE_SEEDS - Seeds visited by tagging sweeps
# ============================================================================
#
# | Column     | Type          | Constraints             |
# |------------|---------------|-------------------------|
# | seed       | VARCHAR(512)  | PRIMARY KEY             |
# | created_at | TIMESTAMP(TZ) | NOT NULL, DEFAULT now() |


# ============================================================================
# PALETTE_TAGS - One row per provider call (append only)
# ============================================================================
#
# | Column         | Type          | Constraints                    |
# |----------------|---------------|--------------------------------|
# | id             | VARCHAR(36)   | PRIMARY KEY (uuid4)            |
# | seed           | VARCHAR(512)  | NOT NULL, INDEX                |
# | provider       | VARCHAR(100)  | NOT NULL                       |
# | model          | VARCHAR(200)  | NOT NULL                       |
# | run_number     | INTEGER       | NOT NULL                       |
# | prompt_version | VARCHAR(32)   | NOT NULL                       |
# | tags           | JSON          | NULLABLE (validated tags)      |
# | error          | TEXT          | NULLABLE                       |
# | created_at     | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()        |
#
# CHECK: exactly one of tags / error is set.
# At most one row per (seed, provider, run_number, prompt_version); the sweep
# only calls providers that have no row yet.


# ============================================================================
# PALETTE_TAG_REFINEMENTS - Curated tag sets
# ============================================================================
#
# | Column                | Type          | Constraints                     |
# |-----------------------|---------------|---------------------------------|
# | id                    | VARCHAR(36)   | PRIMARY KEY (uuid4)             |
# | seed                  | VARCHAR(512)  | NOT NULL, INDEX                 |
# | model                 | VARCHAR(200)  | NOT NULL                        |
# | prompt_version        | VARCHAR(32)   | NOT NULL (refinement prompt)    |
# | source_prompt_version | VARCHAR(32)   | NOT NULL, INDEX (tagging prompt)|
# | input_summary         | JSON          | color data + consensus counts   |
# | refined_tags          | JSON          | NULLABLE                        |
# | error                 | TEXT          | NULLABLE                        |
# | batch_id              | VARCHAR(100)  | NULLABLE (set for batch mode)   |
# | created_at            | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()         |
#
# UNIQUE (seed, source_prompt_version)
# CHECK: exactly one of refined_tags / error is set.


# ============================================================================
# REFINEMENT_BATCHES - Submitted bulk refinement jobs
# ============================================================================
#
# | Column                | Type          | Constraints                   |
# |-----------------------|---------------|-------------------------------|
# | batch_id              | VARCHAR(100)  | PRIMARY KEY (external id)     |
# | status                | VARCHAR(20)   | in_progress, canceling, ended |
# | model                 | VARCHAR(200)  | NOT NULL                      |
# | source_prompt_version | VARCHAR(32)   | NOT NULL                      |
# | request_count         | INTEGER       | NOT NULL, DEFAULT 0           |
# | correlation_map       | JSON          | NOT NULL (idx_<n> -> seed)    |
# | stored_count          | INTEGER       | NOT NULL, DEFAULT 0           |
# | error_count           | INTEGER       | NOT NULL, DEFAULT 0           |
# | skipped_count         | INTEGER       | NOT NULL, DEFAULT 0           |
# | created_at            | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()       |
# | ended_at              | TIMESTAMP(TZ) | NULLABLE                      |
# | processed_at          | TIMESTAMP(TZ) | NULLABLE (set on reconcile)   |


# ============================================================================
# INDEXES
# ============================================================================
#
# | Table                   | Index                            | Columns                          |
# |-------------------------|----------------------------------|----------------------------------|
# | palette_tags            | ix_palette_tags_seed             | seed                             |
# | palette_tags            | ix_palette_tags_seed_run_version | seed, run_number, prompt_version |
# | palette_tags            | ix_palette_tags_prompt_version   | prompt_version                   |
# | palette_tag_refinements | ix_..._seed                      | seed                             |
# | palette_tag_refinements | ix_..._source_prompt_version     | source_prompt_version            |


# ============================================================================
# ER DIAGRAM (Text)
# ============================================================================
#
#  ┌────────────────┐        ┌─────────────────────────┐
#  │ palette_seeds  │        │      palette_tags       │
#  ├────────────────┤  1:N   ├─────────────────────────┤
#  │ seed (PK)      │───────►│ seed                    │
#  │ created_at     │ (seed) │ provider, model         │
#  └────────────────┘        │ run_number              │
#          │                 │ prompt_version          │
#          │                 │ tags | error            │
#          │                 └─────────────────────────┘
#          │ 1:N (seed)
#          ▼
#  ┌─────────────────────────┐        ┌─────────────────────┐
#  │ palette_tag_refinements │  N:1   │ refinement_batches  │
#  ├─────────────────────────┤        ├─────────────────────┤
#  │ seed                    │───────►│ batch_id (PK)       │
#  │ source_prompt_version   │(batch) │ correlation_map     │
#  │ refined_tags | error    │        │ status, counts      │
#  │ batch_id                │        └─────────────────────┘
#  └─────────────────────────┘
#
# Relations are logical (no foreign keys): results may exist for seeds that
# were registered by an earlier deployment.
