"""Core infrastructure: configuration, logging, clock, canonical hashing, ledger and watermarks."""
