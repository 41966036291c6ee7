"""Persona lifecycle: creation, session timer, guidance escalation, deletion."""
