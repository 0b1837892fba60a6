"""Database repositories for batch analysis."""
