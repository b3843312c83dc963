"""Session registry and project records."""
