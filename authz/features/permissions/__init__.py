"""
Permission catalog feature module.

Static catalog, wildcard matching, scope validation and the runtime grant
checks consumed by every other feature.
"""
