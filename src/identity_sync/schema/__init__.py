"""Field registry, type inference and value coercion."""
