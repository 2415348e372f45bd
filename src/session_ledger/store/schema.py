"""Database schema for the session ledger.

Every statement is idempotent (``IF NOT EXISTS``), so the schema can be
applied on every open. Child tables cascade from ``sessions`` so that
deleting a session removes everything recorded for it.
"""

SCHEMA_SQL = """
-- Sessions: one row per assistant session
CREATE TABLE IF NOT EXISTS sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL UNIQUE,
    project TEXT NOT NULL,
    started_at TEXT NOT NULL,
    started_at_epoch INTEGER NOT NULL,
    completed_at TEXT,
    completed_at_epoch INTEGER,
    status TEXT NOT NULL CHECK(status IN ('active', 'completed', 'failed')),
    processing_started_at INTEGER
);

-- User prompts, numbered per session
CREATE TABLE IF NOT EXISTS user_prompts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    prompt_number INTEGER NOT NULL,
    prompt_text TEXT NOT NULL,
    created_at TEXT NOT NULL,
    created_at_epoch INTEGER NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);

-- Tool invocations (output redacted and possibly truncated)
CREATE TABLE IF NOT EXISTS tool_uses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    prompt_number INTEGER NOT NULL,
    tool_name TEXT NOT NULL,
    tool_input TEXT NOT NULL,
    tool_output TEXT NOT NULL,
    tool_output_truncated INTEGER NOT NULL DEFAULT 0,
    tool_output_hash TEXT,
    duration_ms INTEGER,
    cwd TEXT,
    created_at TEXT NOT NULL,
    created_at_epoch INTEGER NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);

-- File reads, deduplicated by content hash
CREATE TABLE IF NOT EXISTS file_reads (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    file_path TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    content_snippet TEXT,
    line_count INTEGER,
    created_at TEXT NOT NULL,
    created_at_epoch INTEGER NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);

-- One summary per session
CREATE TABLE IF NOT EXISTS session_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL UNIQUE,
    project TEXT NOT NULL,
    request TEXT,
    investigated TEXT,
    learned TEXT,
    completed TEXT,
    next_steps TEXT,
    written_to_vault INTEGER NOT NULL DEFAULT 0,
    written_notes TEXT,
    error_message TEXT,
    created_at TEXT NOT NULL,
    created_at_epoch INTEGER NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);

-- Structured observations extracted by the background worker
CREATE TABLE IF NOT EXISTS observations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    project TEXT NOT NULL,
    type TEXT NOT NULL CHECK(type IN ('decision', 'bugfix', 'feature', 'refactor',
                                      'discovery', 'change', 'error', 'pattern')),
    title TEXT NOT NULL,
    subtitle TEXT,
    facts TEXT,
    concepts TEXT,
    narrative TEXT,
    files_read TEXT,
    files_modified TEXT,
    discovery_tokens INTEGER,
    created_at TEXT NOT NULL,
    created_at_epoch INTEGER NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);

-- Claim-and-delete work queue
CREATE TABLE IF NOT EXISTS pending_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    message_type TEXT NOT NULL CHECK(message_type IN ('tool_use', 'prompt', 'summary_request')),
    payload TEXT NOT NULL,
    claimed_at TEXT,
    claimed_at_epoch INTEGER,
    created_at TEXT NOT NULL,
    created_at_epoch INTEGER NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id) ON DELETE CASCADE
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);
CREATE INDEX IF NOT EXISTS idx_sessions_started_at_epoch ON sessions(started_at_epoch);
CREATE INDEX IF NOT EXISTS idx_sessions_status_completed
    ON sessions(status, completed_at_epoch DESC);

CREATE INDEX IF NOT EXISTS idx_user_prompts_session_prompt
    ON user_prompts(session_id, prompt_number);

CREATE INDEX IF NOT EXISTS idx_tool_uses_session_prompt ON tool_uses(session_id, prompt_number);
CREATE INDEX IF NOT EXISTS idx_tool_uses_tool_name ON tool_uses(tool_name);

CREATE INDEX IF NOT EXISTS idx_file_reads_session_path ON file_reads(session_id, file_path);
CREATE INDEX IF NOT EXISTS idx_file_reads_content_hash ON file_reads(content_hash);

CREATE INDEX IF NOT EXISTS idx_session_summaries_project ON session_summaries(project);

CREATE INDEX IF NOT EXISTS idx_observations_session_id ON observations(session_id);
CREATE INDEX IF NOT EXISTS idx_observations_project ON observations(project);
CREATE INDEX IF NOT EXISTS idx_observations_type ON observations(type);
CREATE INDEX IF NOT EXISTS idx_observations_created_at_epoch ON observations(created_at_epoch);

CREATE INDEX IF NOT EXISTS idx_pending_messages_session_id ON pending_messages(session_id);
CREATE INDEX IF NOT EXISTS idx_pending_messages_claimed_epoch
    ON pending_messages(claimed_at_epoch);
CREATE INDEX IF NOT EXISTS idx_pending_messages_created_epoch
    ON pending_messages(created_at_epoch, id);

-- FTS5 shadow tables (content-linked, kept in sync by triggers)
CREATE VIRTUAL TABLE IF NOT EXISTS user_prompts_fts USING fts5(
    session_id,
    prompt_text,
    content='user_prompts',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS user_prompts_ai AFTER INSERT ON user_prompts BEGIN
    INSERT INTO user_prompts_fts(rowid, session_id, prompt_text)
    VALUES (NEW.id, NEW.session_id, NEW.prompt_text);
END;

CREATE TRIGGER IF NOT EXISTS user_prompts_ad AFTER DELETE ON user_prompts BEGIN
    INSERT INTO user_prompts_fts(user_prompts_fts, rowid, session_id, prompt_text)
    VALUES ('delete', OLD.id, OLD.session_id, OLD.prompt_text);
END;

CREATE TRIGGER IF NOT EXISTS user_prompts_au AFTER UPDATE ON user_prompts BEGIN
    INSERT INTO user_prompts_fts(user_prompts_fts, rowid, session_id, prompt_text)
    VALUES ('delete', OLD.id, OLD.session_id, OLD.prompt_text);
    INSERT INTO user_prompts_fts(rowid, session_id, prompt_text)
    VALUES (NEW.id, NEW.session_id, NEW.prompt_text);
END;

CREATE VIRTUAL TABLE IF NOT EXISTS tool_uses_fts USING fts5(
    session_id,
    tool_name,
    tool_input,
    tool_output,
    content='tool_uses',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS tool_uses_ai AFTER INSERT ON tool_uses BEGIN
    INSERT INTO tool_uses_fts(rowid, session_id, tool_name, tool_input, tool_output)
    VALUES (NEW.id, NEW.session_id, NEW.tool_name, NEW.tool_input, NEW.tool_output);
END;

CREATE TRIGGER IF NOT EXISTS tool_uses_ad AFTER DELETE ON tool_uses BEGIN
    INSERT INTO tool_uses_fts(tool_uses_fts, rowid, session_id, tool_name, tool_input, tool_output)
    VALUES ('delete', OLD.id, OLD.session_id, OLD.tool_name, OLD.tool_input, OLD.tool_output);
END;

CREATE TRIGGER IF NOT EXISTS tool_uses_au AFTER UPDATE ON tool_uses BEGIN
    INSERT INTO tool_uses_fts(tool_uses_fts, rowid, session_id, tool_name, tool_input, tool_output)
    VALUES ('delete', OLD.id, OLD.session_id, OLD.tool_name, OLD.tool_input, OLD.tool_output);
    INSERT INTO tool_uses_fts(rowid, session_id, tool_name, tool_input, tool_output)
    VALUES (NEW.id, NEW.session_id, NEW.tool_name, NEW.tool_input, NEW.tool_output);
END;

CREATE VIRTUAL TABLE IF NOT EXISTS observations_fts USING fts5(
    session_id,
    title,
    subtitle,
    narrative,
    facts,
    concepts,
    content='observations',
    content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS observations_ai AFTER INSERT ON observations BEGIN
    INSERT INTO observations_fts(rowid, session_id, title, subtitle, narrative, facts, concepts)
    VALUES (NEW.id, NEW.session_id, NEW.title, NEW.subtitle, NEW.narrative, NEW.facts,
            NEW.concepts);
END;

CREATE TRIGGER IF NOT EXISTS observations_ad AFTER DELETE ON observations BEGIN
    INSERT INTO observations_fts(observations_fts, rowid, session_id, title, subtitle,
                                 narrative, facts, concepts)
    VALUES ('delete', OLD.id, OLD.session_id, OLD.title, OLD.subtitle, OLD.narrative,
            OLD.facts, OLD.concepts);
END;

CREATE TRIGGER IF NOT EXISTS observations_au AFTER UPDATE ON observations BEGIN
    INSERT INTO observations_fts(observations_fts, rowid, session_id, title, subtitle,
                                 narrative, facts, concepts)
    VALUES ('delete', OLD.id, OLD.session_id, OLD.title, OLD.subtitle, OLD.narrative,
            OLD.facts, OLD.concepts);
    INSERT INTO observations_fts(rowid, session_id, title, subtitle, narrative, facts, concepts)
    VALUES (NEW.id, NEW.session_id, NEW.title, NEW.subtitle, NEW.narrative, NEW.facts,
            NEW.concepts);
END;
"""

# Tables whose row counts are reported by inspection, in dependency order
LEDGER_TABLES = (
    "sessions",
    "user_prompts",
    "tool_uses",
    "file_reads",
    "session_summaries",
    "observations",
    "pending_messages",
)

# FTS5 shadow tables paired with their content tables
FTS_TABLES = {
    "user_prompts_fts": "user_prompts",
    "tool_uses_fts": "tool_uses",
    "observations_fts": "observations",
}
