"""Core domain package for the Nomi bridge.

Core contains polling, classification, membership, and dispatch logic without
any HTTP, LLM, or storage-specific code, keeping the business logic portable.
"""
