"""Conversation log: ordered per-session messages."""
