"""
Common App

Shared types, logging context, middleware and access decorators.
"""
