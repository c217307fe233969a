"""
Dev Supervisor - runs project dev servers and heals them when they crash.

Resolves the dev command for JavaScript/TypeScript projects, supervises the
dev server process, and restarts it after crashes, optionally waiting for an
external repair agent to fix the code first.
"""

__version__ = "0.1.0"
