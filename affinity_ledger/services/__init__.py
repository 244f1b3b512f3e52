"""Services implementing the ledger, projections and batch coordination."""
