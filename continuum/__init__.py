"""Continuum -- durable orchestration for long-running reasoning conversations."""
