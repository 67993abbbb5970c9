"""duochat: real-time two-party messaging engine."""
