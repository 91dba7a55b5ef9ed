"""V-Score reputation engine."""
