"""DDL for the tables the chat core reads and writes."""

from __future__ import annotations

SCHEMA_STATEMENTS: tuple[str, ...] = (
	"""
	CREATE TABLE IF NOT EXISTS chat_conversations (
		conversation_id TEXT PRIMARY KEY,
		user_a TEXT NOT NULL,
		user_b TEXT NOT NULL,
		created_at TIMESTAMPTZ NOT NULL DEFAULT now()
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS chat_messages (
		message_id TEXT PRIMARY KEY,
		conversation_id TEXT NOT NULL REFERENCES chat_conversations (conversation_id),
		sender_id TEXT NOT NULL,
		type TEXT NOT NULL,
		content TEXT NOT NULL DEFAULT '',
		metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
		flagged BOOLEAN NOT NULL DEFAULT FALSE,
		is_read BOOLEAN NOT NULL DEFAULT FALSE,
		is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
		created_at TIMESTAMPTZ NOT NULL,
		deleted_at TIMESTAMPTZ
	)
	""",
	"""
	CREATE INDEX IF NOT EXISTS chat_messages_conversation_idx
		ON chat_messages (conversation_id, message_id DESC)
	""",
	"""
	CREATE TABLE IF NOT EXISTS chat_read_markers (
		conversation_id TEXT NOT NULL,
		user_id TEXT NOT NULL,
		up_to_message_id TEXT NOT NULL,
		updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
		PRIMARY KEY (conversation_id, user_id)
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS ephemeral_photos (
		photo_id TEXT PRIMARY KEY,
		owner_user_id TEXT NOT NULL,
		conversation_id TEXT,
		thumbnail_ref TEXT NOT NULL,
		storage_ref TEXT NOT NULL,
		max_views INTEGER NOT NULL DEFAULT 1,
		view_count INTEGER NOT NULL DEFAULT 0,
		duration_seconds INTEGER NOT NULL,
		state TEXT NOT NULL DEFAULT 'created',
		created_at TIMESTAMPTZ NOT NULL,
		expires_at TIMESTAMPTZ NOT NULL,
		purged_at TIMESTAMPTZ
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS ephemeral_photo_views (
		photo_id TEXT NOT NULL REFERENCES ephemeral_photos (photo_id),
		viewer_user_id TEXT NOT NULL,
		viewed_at TIMESTAMPTZ NOT NULL,
		PRIMARY KEY (photo_id, viewer_user_id)
	)
	""",
	"""
	CREATE INDEX IF NOT EXISTS ephemeral_photos_expiry_idx
		ON ephemeral_photos (expires_at) WHERE state = 'created'
	""",
	"""
	CREATE INDEX IF NOT EXISTS ephemeral_photos_purge_idx
		ON ephemeral_photos (created_at) WHERE state <> 'created' AND purged_at IS NULL
	""",
	"""
	CREATE TABLE IF NOT EXISTS user_blocks (
		blocker_id TEXT NOT NULL,
		blocked_id TEXT NOT NULL,
		created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
		PRIMARY KEY (blocker_id, blocked_id)
	)
	""",
)
