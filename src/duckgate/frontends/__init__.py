"""Frontends - user interfaces for duckgate.

Submodules:
    cli/    Command-line interface
"""
