"""Credit ledger, balance aggregate and runtime settings."""
