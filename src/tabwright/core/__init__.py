"""Core primitives shared by the browser layer."""
