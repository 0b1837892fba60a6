"""API routers for batch analysis."""
