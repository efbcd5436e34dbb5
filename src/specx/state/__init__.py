"""Persisted workflow state: spec documents, task store, locks and transitions."""
