"""Database Schema Definitions."""

SCHEMA_SQL = """
-- 1. Messaging Accounts (one Facebook Page or one WhatsApp number)
CREATE TABLE IF NOT EXISTS messaging_accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_user_id TEXT NOT NULL,
    account_name TEXT,
    platform TEXT NOT NULL CHECK(platform IN ('FACEBOOK', 'WHATSAPP')),
    page_id TEXT NOT NULL DEFAULT '',
    phone_number_id TEXT NOT NULL DEFAULT '',
    business_account_id TEXT,
    access_token TEXT NOT NULL,
    webhook_verify_token TEXT,
    webhook_secret TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(platform, page_id, phone_number_id)
);

CREATE INDEX IF NOT EXISTS idx_accounts_owner ON messaging_accounts(owner_user_id);

-- 2. Customers (shared across accounts of the same platform)
CREATE TABLE IF NOT EXISTS messaging_customers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    platform TEXT NOT NULL,
    platform_customer_id TEXT NOT NULL,
    display_name TEXT,
    first_name TEXT,
    last_name TEXT,
    profile_picture_url TEXT,
    phone_number TEXT,
    email TEXT,
    address TEXT,
    profile_fetched INTEGER NOT NULL DEFAULT 0,
    profile_fetch_attempted_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(platform, platform_customer_id)
);

-- 3. Conversations (one per account and customer)
CREATE TABLE IF NOT EXISTS conversations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL,
    customer_id INTEGER NOT NULL,
    conversation_name TEXT,
    last_message_at TEXT,
    unread_count INTEGER NOT NULL DEFAULT 0 CHECK(unread_count >= 0),
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(account_id, customer_id)
);

CREATE INDEX IF NOT EXISTS idx_conversations_last_message ON conversations(account_id, last_message_at);

-- 4. Messages (platform_message_id NULL until the platform assigns one, NULLs never collide)
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    conversation_id INTEGER NOT NULL,
    account_id INTEGER NOT NULL,
    customer_id INTEGER NOT NULL,
    platform_message_id TEXT UNIQUE,
    sender_id TEXT,
    recipient_id TEXT,
    message_type TEXT NOT NULL DEFAULT 'TEXT',
    content TEXT,
    is_inbound INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'SENT' CHECK(status IN ('SENT', 'DELIVERED', 'READ', 'FAILED')),
    sent_by_user_id TEXT,
    timestamp TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, timestamp);

-- 5. Attachments
CREATE TABLE IF NOT EXISTS message_attachments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id INTEGER NOT NULL,
    attachment_type TEXT NOT NULL,
    file_url TEXT,
    file_path TEXT,
    file_size INTEGER,
    mime_type TEXT,
    original_filename TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_attachments_message ON message_attachments(message_id);

-- 6. Webhook audit log (raw payload stored verbatim)
CREATE TABLE IF NOT EXISTS webhook_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    platform TEXT NOT NULL,
    event_type TEXT NOT NULL,
    raw_payload TEXT NOT NULL,
    processed INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    account_id INTEGER,
    created_at TEXT NOT NULL,
    processed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_webhook_events_pending ON webhook_events(processed, id);

-- 7. Per-user read markers
CREATE TABLE IF NOT EXISTS message_notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    message_id INTEGER NOT NULL,
    conversation_id INTEGER NOT NULL,
    is_read INTEGER NOT NULL DEFAULT 0,
    read_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE(user_id, message_id)
);

CREATE INDEX IF NOT EXISTS idx_notifications_user ON message_notifications(user_id, is_read)
"""
