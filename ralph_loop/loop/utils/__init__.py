"""Storage, configuration and concurrency helpers for the loop subsystem."""
