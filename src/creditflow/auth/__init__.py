"""Accounts, password login and session tokens."""
