"""PMR catalog cache service."""
