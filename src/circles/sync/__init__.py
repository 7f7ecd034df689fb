"""Offline-first sync: the offline queue, the drain engine, and pull reconciliation."""
