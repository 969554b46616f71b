"""Worker runtime and handler registry."""
