"""Event handlers and default collaborators for Continuum.

EventForwarder registers itself on the bus during __init__.
TranscriptLogger is the default persist collaborator.
"""
