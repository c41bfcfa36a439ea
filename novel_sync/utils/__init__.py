"""Small helpers shared across the sync package."""
