"""Adapters connecting the core to Nomi, the LLM provider, SQLite, and HTTP."""
