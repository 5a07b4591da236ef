"""SQLite schema definitions for the local Trove store."""

# SQL schema definitions
SCHEMA_VERSION = 1

CREATE_TABLES = [
    # Vaults table - one row per vault, keyed by the derived vault id
    """
    CREATE TABLE IF NOT EXISTS vaults (
        uid TEXT PRIMARY KEY,
        manifest_cipher BLOB NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        burn_at TIMESTAMP,
        storage_used INTEGER DEFAULT 0,
        storage_limit INTEGER DEFAULT 5000000000
    )
    """,
    # Uploads table - in-progress uploads, for resume
    """
    CREATE TABLE IF NOT EXISTS uploads (
        upload_id TEXT PRIMARY KEY,
        vault_uid TEXT NOT NULL,
        file_uid TEXT NOT NULL,
        total_chunks INTEGER NOT NULL,
        received_chunks TEXT NOT NULL DEFAULT '[]', -- JSON array of ints
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (vault_uid) REFERENCES vaults(uid) ON DELETE CASCADE
    )
    """,
    # Storage grants - free allocation now, purchases later
    """
    CREATE TABLE IF NOT EXISTS storage_transacts (
        id TEXT PRIMARY KEY,
        transaction_uid TEXT NOT NULL,
        vault_uid TEXT NOT NULL,
        storage_bytes INTEGER NOT NULL,
        previous_transact TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (vault_uid) REFERENCES vaults(uid) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY,
        applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """,
]

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_uploads_vault ON uploads(vault_uid)",
    "CREATE INDEX IF NOT EXISTS idx_uploads_file ON uploads(file_uid)",
    "CREATE INDEX IF NOT EXISTS idx_storage_vault ON storage_transacts(vault_uid)",
    "CREATE INDEX IF NOT EXISTS idx_vaults_burn ON vaults(burn_at) WHERE burn_at IS NOT NULL",
]


def get_init_schema():
    """Return every statement needed to initialize a fresh database."""
    return (
        CREATE_TABLES
        + CREATE_INDEXES
        + [f"INSERT OR IGNORE INTO schema_version (version) VALUES ({SCHEMA_VERSION})"]
    )
