"""Conversations, messages and the delivery engine that fans them out."""
