"""Stage agents: one class per model-calling pipeline stage."""
