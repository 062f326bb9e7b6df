"""GenBroker application package: core services, persistence and the HTTP API."""
