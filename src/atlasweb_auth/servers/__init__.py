"""HTTP layer: Starlette routes, middleware and application factory."""
