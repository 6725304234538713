"""Shared utilities: configuration, logging, retry and client factories."""
