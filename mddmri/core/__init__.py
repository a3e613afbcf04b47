"""Shared infrastructure: options, validation, logging, progress and worker pools."""
