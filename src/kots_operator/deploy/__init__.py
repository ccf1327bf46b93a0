"""Deploy coordination: manifest diffs, applies, helm charts and cleanup."""
