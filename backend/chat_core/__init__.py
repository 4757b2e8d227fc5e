"""Chat domain core: conversations, groups, messages and read receipts."""
