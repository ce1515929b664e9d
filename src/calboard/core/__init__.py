"""Cross-cutting infrastructure: logging, tracing and metrics."""
