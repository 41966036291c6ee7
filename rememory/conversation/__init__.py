"""Conversation engine: prompt windows, compaction and the turn orchestrator."""
