"""Generation pipeline: job store, claims, heartbeat, stages and cost accounting.

Jobs live in a single SQLite store. Any number of processes may call
`process(job_id)` for the same job; the claim protocol guarantees at most one
of them runs the stages, and checkpoints written after every stage let a later
trigger resume where a crashed or released worker stopped.
"""
