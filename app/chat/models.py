conversations_sql = """
CREATE TABLE conversations (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),

    participant_1 UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    participant_2 UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,

    listing_id UUID REFERENCES listings(id) ON DELETE SET NULL,

    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),

    -- Canonical ordering, also rules out a conversation with yourself
    CONSTRAINT participant_1_less_than_participant_2 CHECK (participant_1 < participant_2),

    -- One conversation per pair per listing ("no listing" is its own key)
    CONSTRAINT unique_pair_listing UNIQUE NULLS NOT DISTINCT (participant_1, participant_2, listing_id)
);

CREATE INDEX conversations_participant_1_idx ON conversations (participant_1, updated_at DESC);
CREATE INDEX conversations_participant_2_idx ON conversations (participant_2, updated_at DESC);
"""

messages_sql = """
CREATE TABLE messages (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    conversation_id UUID NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    sender_id UUID NOT NULL REFERENCES auth.users(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    read BOOLEAN NOT NULL DEFAULT FALSE,
    listing_id UUID REFERENCES listings(id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),

    CONSTRAINT content_not_blank CHECK (length(btrim(content)) > 0)
);

CREATE INDEX messages_conversation_created_idx ON messages (conversation_id, created_at, id);
CREATE INDEX messages_unread_idx ON messages (conversation_id) WHERE read = FALSE;

-- Realtime change feed
ALTER PUBLICATION supabase_realtime ADD TABLE messages;
"""

# Readers may only flip `read` on messages they did not send, and only to true.
messages_read_policy_sql = """
ALTER TABLE messages ENABLE ROW LEVEL SECURITY;

CREATE POLICY "participants read messages" ON messages FOR SELECT USING (
    EXISTS (
        SELECT 1 FROM conversations c
        WHERE c.id = conversation_id
        AND auth.uid() IN (c.participant_1, c.participant_2)
    )
);

CREATE POLICY "recipient marks read" ON messages FOR UPDATE
    USING (sender_id <> auth.uid() AND read = FALSE)
    WITH CHECK (read = TRUE);
"""
