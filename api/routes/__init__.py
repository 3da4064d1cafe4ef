"""api/routes/ -- Versioned routers. Same layer rule as api/."""
