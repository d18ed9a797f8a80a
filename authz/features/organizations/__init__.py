"""
Organization feature module.

Each organization kind is served by an adapter registered at startup; the
engine only talks to organizations through the adapter interface.
"""
