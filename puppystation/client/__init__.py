"""Viewer-side synchronization: the reconciler and its live transport."""
