"""Configuration, request context, errors and security primitives."""
