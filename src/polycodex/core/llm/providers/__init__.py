"""Concrete provider adapters, imported lazily by `create_provider`."""
