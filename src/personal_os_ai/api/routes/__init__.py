"""API routes, all mounted under /api/ai."""
