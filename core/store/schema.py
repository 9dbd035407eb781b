"""SQLite schema for the task store."""

# attempt.seq 保证同一任务内的尝试严格有序；snapshot 表记录检查点链，用于回滚。
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS task (
  id TEXT PRIMARY KEY,
  description TEXT NOT NULL,
  goal TEXT NOT NULL,
  parent_id TEXT,
  continuation_summary TEXT,
  status TEXT CHECK (status IN ('pending', 'in_progress', 'success', 'failed')) NOT NULL DEFAULT 'pending',
  environment_snapshot_id TEXT,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
  updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (parent_id) REFERENCES task(id)
);

CREATE TABLE IF NOT EXISTS attempt (
  id TEXT PRIMARY KEY,
  task_id TEXT NOT NULL,
  seq INTEGER NOT NULL,
  action_type TEXT NOT NULL CHECK (action_type IN ('shell', 'files', 'http', 'llm_call', 'docker', 'custom')),
  action_id TEXT NOT NULL,
  action_description TEXT NOT NULL,
  action_params TEXT NOT NULL,
  status TEXT CHECK (status IN ('pending', 'success', 'failure')) NOT NULL DEFAULT 'pending',
  error_code TEXT,
  error_message TEXT,
  error_severity TEXT CHECK (error_severity IN ('recoverable', 'fatal')),
  outputs TEXT,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (task_id) REFERENCES task(id),
  UNIQUE (task_id, seq)
);

CREATE TABLE IF NOT EXISTS snapshot (
  id TEXT PRIMARY KEY,
  task_id TEXT NOT NULL,
  parent_snapshot_id TEXT,
  env_handle TEXT NOT NULL,
  created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
  FOREIGN KEY (task_id) REFERENCES task(id),
  FOREIGN KEY (parent_snapshot_id) REFERENCES snapshot(id)
);

CREATE INDEX IF NOT EXISTS idx_task_parent ON task(parent_id);
CREATE INDEX IF NOT EXISTS idx_attempt_task_seq ON attempt(task_id, seq);
CREATE INDEX IF NOT EXISTS idx_snapshot_task ON snapshot(task_id, created_at);
"""

REQUIRED_TABLES = ("task", "attempt", "snapshot")
