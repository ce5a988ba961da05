"""Record → calendar reconciliation engine."""
