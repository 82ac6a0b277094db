"""Source connectors: fetch raw attribute maps from external identity systems."""
