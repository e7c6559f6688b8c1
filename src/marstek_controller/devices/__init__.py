"""Local and cloud device models."""
