"""HTTP layer of the ledger API, grouped by version."""
