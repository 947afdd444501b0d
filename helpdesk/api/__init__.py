"""HTTP layer exposing the ticket engine."""
