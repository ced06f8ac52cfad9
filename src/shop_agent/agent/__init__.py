"""Completion client, conversation building and the turn orchestrator."""
