"""
SQLite schema for the transactional metadata store (v1).

Document layout it mirrors:
    projects/{projectId}/builds/{buildId}     -> builds row
    projects/{projectId}/counters/builds      -> build_counters row
    projects/{projectId}/apiKeys/{keyId}      -> api_keys row

Invariants:
- (project_id, build_number) is unique: no two builds share a number.
- build_counters.current_build_number never decreases.
- Deleting a build never touches build_counters.
- All timestamps are ISO8601 UTC (e.g., 2026-02-14T03:42:11.000Z).
- coverage is canonical JSON or NULL.
"""

from __future__ import annotations

SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- ============================================================
-- Schema version tracking (migration-safe)
-- ============================================================

CREATE TABLE IF NOT EXISTS schema_version (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

INSERT OR IGNORE INTO schema_version (id, version, applied_at)
VALUES (1, 1, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'));


-- ============================================================
-- Per-project build counters
-- ============================================================

CREATE TABLE IF NOT EXISTS build_counters (
    project_id TEXT PRIMARY KEY,
    current_build_number INTEGER NOT NULL CHECK (current_build_number >= 1)
);


-- ============================================================
-- Builds
-- ============================================================

CREATE TABLE IF NOT EXISTS builds (
    project_id   TEXT NOT NULL,
    build_id     TEXT NOT NULL,

    version_id   TEXT NOT NULL,
    build_number INTEGER NOT NULL CHECK (build_number >= 1),
    zip_url      TEXT NOT NULL,

    status TEXT NOT NULL DEFAULT 'active' CHECK (
        status IN ('active', 'archived')
    ),

    created_at  TEXT NOT NULL,
    created_by  TEXT NOT NULL,
    archived_at TEXT,
    archived_by TEXT,

    coverage TEXT CHECK (coverage IS NULL OR json_valid(coverage)),

    PRIMARY KEY (project_id, build_id)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_builds_project_number
ON builds(project_id, build_number);

CREATE INDEX IF NOT EXISTS idx_builds_project_version
ON builds(project_id, version_id);

CREATE INDEX IF NOT EXISTS idx_builds_project_status_created
ON builds(project_id, status, created_at);


-- ============================================================
-- API keys (hash only, raw keys are never stored)
-- ============================================================

CREATE TABLE IF NOT EXISTS api_keys (
    project_id TEXT NOT NULL,
    key_id     TEXT NOT NULL,

    name   TEXT NOT NULL,
    prefix TEXT NOT NULL,
    hash   TEXT NOT NULL CHECK (length(hash) = 64),

    status TEXT NOT NULL DEFAULT 'active' CHECK (
        status IN ('active', 'revoked')
    ),

    created_at   TEXT NOT NULL,
    created_by   TEXT NOT NULL,
    last_used_at TEXT,
    expires_at   TEXT,
    revoked_at   TEXT,
    revoked_by   TEXT,

    PRIMARY KEY (project_id, key_id)
);

CREATE INDEX IF NOT EXISTS idx_api_keys_project_hash
ON api_keys(project_id, hash);
"""
