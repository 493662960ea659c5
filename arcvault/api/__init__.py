"""ArcVault JSON API."""
