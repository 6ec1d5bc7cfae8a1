"""Core - process-wide setup shared by every entry point."""
