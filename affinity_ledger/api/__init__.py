"""HTTP API for the affinity ledger."""
