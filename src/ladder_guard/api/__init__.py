"""HTTP surface for the guard layer."""
