"""Sandbox providers and the per-project sandbox registry."""
