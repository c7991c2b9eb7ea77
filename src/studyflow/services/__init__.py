"""Service layer: HTTP transport, backend endpoints, settings."""
