"""HTTP API for triggering collection runs and reading stored articles."""
