"""HTTP layer: dependencies, middleware and routes."""
