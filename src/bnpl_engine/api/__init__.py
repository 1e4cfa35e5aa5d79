"""HTTP API for the installment engine."""
