"""Utility helpers: logging, retries, subprocesses, polling and tooling checks."""
