"""In-memory fakes of the external boundaries (source connectors, trigger backend)."""
