"""Shared utilities for the session ledger."""
