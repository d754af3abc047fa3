"""HTTP API for control-loop status and policy simulation."""
